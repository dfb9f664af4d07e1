import time
from typing import Callable, Dict, Optional, Tuple


class PendingRedirectStore:
    """Short-lived map from gateway reference to order id.

    The redirect back from the gateway may carry only the reference, so the
    order id is remembered here before the buyer leaves. Entries expire after
    ``ttl_seconds`` and are forgotten as soon as the payment resolves.
    """

    def __init__(self, ttl_seconds: float = 1800, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def remember(self, reference: str, order_id: str) -> None:
        self._entries[reference] = (order_id, self._clock() + self.ttl_seconds)

    def recall(self, reference: str) -> Optional[str]:
        entry = self._entries.get(reference)
        if entry is None:
            return None
        order_id, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[reference]
            return None
        return order_id

    def forget(self, reference: str) -> None:
        self._entries.pop(reference, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [ref for ref, (_, expires_at) in self._entries.items() if now >= expires_at]
        for ref in expired:
            del self._entries[ref]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, reference: str) -> bool:
        return self.recall(reference) is not None
