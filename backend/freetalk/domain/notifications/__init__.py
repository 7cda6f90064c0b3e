"""Notification records, duplicate suppression and fan-out."""

from .models import Notification, NotificationDraft
from .service import NotificationDispatcher
from .store import NotificationStore

__all__ = ["Notification", "NotificationDispatcher", "NotificationDraft", "NotificationStore"]
