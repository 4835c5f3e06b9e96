"""WhatsApp session supervision microservice."""

from .api import create_app
from .supervisor import SessionSupervisor

__all__ = ["create_app", "SessionSupervisor"]
