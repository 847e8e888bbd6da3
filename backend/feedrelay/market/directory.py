"""In-memory map from feed instrument id to display name."""

from __future__ import annotations


class InstrumentDirectory:
    """Display names for subscribed instruments, keyed by feed instrument id.

    Writers: SubscriptionManager (on subscribe/unsubscribe success).
    Readers: EventRouter (annotation of every upstream event).

    Only touched from the event loop, so no locking is needed.
    """

    def __init__(self) -> None:
        self._names: dict[str, str] = {}

    def set(self, feed_id: int | str, name: str) -> None:
        """Record the display name for a feed instrument id."""
        self._names[_key(feed_id)] = name

    def get(self, feed_id: int | str) -> str | None:
        """Display name for a feed instrument id, or None if unknown."""
        return self._names.get(_key(feed_id))

    def remove(self, feed_id: int | str) -> None:
        """Forget a feed instrument id. No-op if it is not present."""
        self._names.pop(_key(feed_id), None)

    def snapshot(self) -> dict[str, str]:
        """Shallow copy of all entries."""
        return dict(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, feed_id: object) -> bool:
        if not isinstance(feed_id, (int, str)):
            return False
        return _key(feed_id) in self._names


def _key(feed_id: int | str) -> str:
    # Events carry ints, subscription responses sometimes strings
    return str(feed_id).strip()
