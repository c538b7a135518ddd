"""Remote store clients."""
from .postgrest import PostgrestStore
from .realtime import RealtimeFeed, RealtimeSubscription

__all__ = ["PostgrestStore", "RealtimeFeed", "RealtimeSubscription"]
