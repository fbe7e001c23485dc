"""Server-creation admission control and scheduling engine."""
