"""Identity lookups consumed by the messaging core."""

from .directory import UserDirectory, UserRecord

__all__ = ["UserDirectory", "UserRecord"]
