from __future__ import annotations

from .errors import DuplicateFeedID, FeedNotFound
from .feed import Feed
from .rwlock import RWLock


class FeedRegistry:
    """Live feed instances keyed by feed id.

    Reads return snapshots and never block each other. ``unregister`` stops
    the instance before removing it, so a running feed is never dropped.
    """

    def __init__(self) -> None:
        self._feeds: dict[str, Feed] = {}
        self._lock = RWLock()

    def register(self, feed: Feed) -> None:
        with self._lock.write():
            if feed.id in self._feeds:
                raise DuplicateFeedID(f"feed with id {feed.id} is already registered")
            self._feeds[feed.id] = feed

    def unregister(self, feed_id: str) -> None:
        with self._lock.read():
            feed = self._feeds.get(feed_id)
        if feed is None:
            raise FeedNotFound(f"feed with id {feed_id} not found")
        feed.stop()
        with self._lock.write():
            if self._feeds.get(feed_id) is feed:
                del self._feeds[feed_id]

    def get(self, feed_id: str) -> Feed | None:
        with self._lock.read():
            return self._feeds.get(feed_id)

    def list(self) -> list[Feed]:
        with self._lock.read():
            return list(self._feeds.values())

    def __contains__(self, feed_id: str) -> bool:
        with self._lock.read():
            return feed_id in self._feeds

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._feeds)

    def stop_all(self) -> None:
        first_error: Exception | None = None
        for feed in self.list():
            try:
                feed.stop()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
