"""Control plane clients."""

from urllib.parse import urlsplit

from segment_push.controller.base import ControlPlane
from segment_push.controller.http import HttpControlPlane
from segment_push.controller.memory import InMemoryControlPlane
from segment_push.errors import InvalidRequestError


def connect(controller_uri: str, auth_token: str | None = None) -> ControlPlane:
    """Client for a controller URI, chosen by scheme."""
    parts = urlsplit(controller_uri)
    scheme = parts.scheme.lower()
    if scheme in ("http", "https"):
        return HttpControlPlane(controller_uri, auth_token=auth_token)
    if scheme == "memory":
        return InMemoryControlPlane.named(parts.netloc or parts.path.strip("/") or "default")
    raise InvalidRequestError(f"Unsupported controller URI: {controller_uri}")


__all__ = ["ControlPlane", "HttpControlPlane", "InMemoryControlPlane", "connect"]
