"""
Subscription bridge

Wraps the document store's snapshot listeners in cancel-once handles and
keeps at most one live listener per cache slot, so switching conversations
never leaves two listeners delivering into the same slice.
"""
import logging
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for one listener. cancel() stops it exactly once."""

    def __init__(self, unsubscribe: Callable[[], None], label: str = ""):
        self._unsubscribe = unsubscribe
        self.label = label
        self.cancelled = False

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        logger.debug(f"Cancelling subscription {self.label}")
        self._unsubscribe()

    def __call__(self):
        self.cancel()

    def __repr__(self):
        state = "cancelled" if self.cancelled else "active"
        return f"<Subscription {self.label} {state}>"


class CombinedSubscription(Subscription):
    """One handle over several listeners; cancelling it stops all of them"""

    def __init__(self, *subscriptions: Subscription, label: str = ""):
        self.children = list(subscriptions)
        super().__init__(self._cancel_children, label)

    def _cancel_children(self):
        errors = []
        for child in self.children:
            try:
                child.cancel()
            except Exception as e:
                errors.append(e)
        # Every child gets its cancel call before the first failure surfaces
        if errors:
            raise errors[0]


class SubscriptionBridge:
    """Slot-keyed registry of active subscriptions"""

    MESSAGES = "messages"
    NOTIFICATIONS = "notifications"
    ADMIN = "admin"
    SWAP_REQUESTS = "swap_requests"

    def __init__(self):
        self._active: Dict[str, Subscription] = {}
        self._keys: Dict[str, Optional[str]] = {}

    def attach(self, slot: str, key: Optional[str], factory: Callable[[], Subscription]) -> Subscription:
        """
        Start the listener built by ``factory`` in ``slot``.

        Re-attaching the same key returns the live handle. A different key
        cancels the old listener first.
        """
        current = self._active.get(slot)
        if current is not None and not current.cancelled and self._keys.get(slot) == key:
            return current
        self.cancel(slot)
        subscription = factory()
        self._active[slot] = subscription
        self._keys[slot] = key
        logger.debug(f"Attached {slot} subscription for {key}")
        return subscription

    def get(self, slot: str) -> Optional[Subscription]:
        subscription = self._active.get(slot)
        if subscription is None or subscription.cancelled:
            return None
        return subscription

    def key(self, slot: str) -> Optional[str]:
        return self._keys.get(slot) if self.get(slot) else None

    def cancel(self, slot: str):
        subscription = self._active.pop(slot, None)
        self._keys.pop(slot, None)
        if subscription is not None:
            subscription.cancel()

    def cancel_all(self):
        for slot in list(self._active):
            self.cancel(slot)

    def __len__(self):
        return sum(1 for s in self._active.values() if not s.cancelled)
