"""In-process metrics for the presence core and the sidecar service."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
