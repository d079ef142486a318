"""WhatsApp session lifecycle microservice."""

from .api import create_app
from .manager import SessionManager

__all__ = ["create_app", "SessionManager"]
