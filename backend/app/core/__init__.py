"""Core utilities for the Aether backend."""

from .security import InvalidTokenError, create_access_token, decode_access_token, token_subject

__all__ = ["InvalidTokenError", "create_access_token", "decode_access_token", "token_subject"]
