"""GCP provider implementation."""

from .provider import GcpProvider

__all__ = ["GcpProvider"]
