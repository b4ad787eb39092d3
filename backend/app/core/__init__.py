"""Core utilities for the Nooke backend."""

from .security import create_access_token, create_transport_token, decode_access_token

__all__ = ["create_access_token", "create_transport_token", "decode_access_token"]
