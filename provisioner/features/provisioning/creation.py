"""
Creation service boundary.

Defines the interface for the external instance lifecycle manager that
actually creates a server from a ProvisionedSpec. The engine only needs the
initial accept/reject outcome; install and boot complete out of band.
"""
from typing import Optional, Protocol
import logging

import httpx

from provisioner.core.config import settings
from provisioner.core.errors import CreationServiceFailureError
from provisioner.models.provisioning import InstanceHandle, ProvisionedSpec


logger = logging.getLogger(__name__)


class CreationService(Protocol):
    """
    Protocol for creation services.

    Implementations must either return an InstanceHandle for an accepted spec
    or raise. Any exception (including CreationServiceFailureError) is treated
    as a rejection by the orchestrator.
    """

    async def create(self, spec: ProvisionedSpec) -> InstanceHandle:
        ...


class HttpCreationService:
    """Creation service reached over HTTP (JSON spec in, instance id out)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: Service root (defaults to CREATION_SERVICE_URL)
            api_key: Bearer token (defaults to CREATION_SERVICE_API_KEY)
            client: Optional preconfigured client (tests inject a MockTransport)
        """
        self.base_url = (base_url or settings.CREATION_SERVICE_URL or "").rstrip("/")
        self.api_key = api_key or settings.CREATION_SERVICE_API_KEY
        self._client = client

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def create(self, spec: ProvisionedSpec) -> InstanceHandle:
        if not self.base_url:
            logger.error("[creation] CREATION_SERVICE_URL not configured")
            raise CreationServiceFailureError("CREATION_SERVICE_URL not configured")
        url = f"{self.base_url}/servers"
        payload = spec.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=self._headers())
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("[creation] transport error", extra={"url": url, "error": str(e)})
            raise CreationServiceFailureError(f"creation service unreachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "[creation] rejected",
                extra={"url": url, "status": response.status_code},
            )
            raise CreationServiceFailureError(f"creation service rejected request ({response.status_code})")

        try:
            body = response.json()
            return InstanceHandle(
                instance_id=str(body["instance_id"]),
                status=body.get("status", "installing"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise CreationServiceFailureError("creation service returned an invalid response") from e
