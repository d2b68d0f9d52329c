"""Online store factory types.

OnlineStoreKind is a simple union type (not a discriminated union yet).
When another online store is added, extend the union.
"""

from .base import BaseOnlineStore, OnlineRecord
from .push import PushBuffer
from .sqlite import SqliteOnlineStore

OnlineStoreKind = SqliteOnlineStore

__all__ = ["BaseOnlineStore", "OnlineRecord", "OnlineStoreKind", "PushBuffer", "SqliteOnlineStore"]
