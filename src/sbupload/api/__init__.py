"""HTTP surface of the upload service."""

from .app import create_app
from .auth import API_KEY_HEADER, api_key_middleware

__all__ = ["create_app", "API_KEY_HEADER", "api_key_middleware"]
