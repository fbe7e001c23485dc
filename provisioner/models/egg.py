"""
provisioner/models/egg.py

Egg (provisioning template) models.
"""

from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict


class EggVariable(BaseModel):
    model_config = ConfigDict(frozen=True)

    env_variable: str
    default_value: Optional[str] = None


class Egg(BaseModel):
    """
    Egg describes how an instance is started.

    `docker_images` maps a display label to an image reference; any one of
    the images is an acceptable runtime for the egg.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str] = None
    startup: str
    docker_images: Dict[str, str] = {}
    variables: List[EggVariable] = []
    image_url: Optional[str] = None
