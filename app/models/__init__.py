# app/models/__init__.py
from .outbox import OutboxEvent, OutboxStatus
from .processed_event import ProcessedEvent
from .user import User
from .user_profile import UserProfile

# Export all models
__all__ = [
    "OutboxEvent",
    "OutboxStatus",
    "ProcessedEvent",
    "User",
    "UserProfile",
]
