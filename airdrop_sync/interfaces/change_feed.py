"""Change feed protocol: server-pushed row change notifications."""
from typing import Callable, Protocol

from ..models import ChangeEvent, FeedStatus


class Subscription(Protocol):
    """Handle for one open change-feed subscription."""

    async def unsubscribe(self) -> None: ...


class ChangeFeed(Protocol):
    """Abstract interface for subscribing to row changes of one table."""

    async def subscribe(
        self,
        table: str,
        row_filter: str,
        on_change: Callable[[ChangeEvent], None],
        on_status: Callable[[FeedStatus], None],
    ) -> Subscription: ...
