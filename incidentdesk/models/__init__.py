"""SQLAlchemy models package."""

from .base import Base
from .user import User
from .incident import Incident
from .notification import Notification
from .message import Message
from .category import Category

__all__ = [
    "Base",
    "User",
    "Incident",
    "Notification",
    "Message",
    "Category",
]
