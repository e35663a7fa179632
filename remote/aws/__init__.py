"""AWS provider implementation."""

from .provider import AwsProvider

__all__ = ["AwsProvider"]
