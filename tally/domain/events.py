"""Event bus: the engine's single outward channel.

Each subscription owns a bounded queue. An event stays queued until its
handler returns normally, so a handler that raises sees the event again on
the next flush (at-least-once). Consumers dedup on ``event_id``.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Union

from tally.domain.models import BudgetId, GoalId, TemplateId, TransactionId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetThresholdCrossed:
    budget_id: BudgetId
    threshold: int
    period_start: date
    instant: date | datetime

    @property
    def event_id(self) -> str:
        return f"budget:{self.budget_id}:{self.threshold}:{self.period_start.isoformat()}"


@dataclass(frozen=True)
class RecurringTransactionPosted:
    transaction_id: TransactionId
    template_id: TemplateId
    date: date

    @property
    def event_id(self) -> str:
        return f"recurring:{self.template_id}:{self.transaction_id}"


@dataclass(frozen=True)
class GoalMilestoneReached:
    goal_id: GoalId
    milestone: int

    @property
    def event_id(self) -> str:
        return f"goal:{self.goal_id}:{self.milestone}"


Event = Union[BudgetThresholdCrossed, RecurringTransactionPosted, GoalMilestoneReached]
Handler = Callable[[Event], object]


@dataclass(eq=False)
class Subscription:
    """A subscriber and its undelivered events."""

    handler: Handler
    pending: deque[Event] = field(default_factory=deque)
    delivering: threading.Lock = field(default_factory=threading.Lock)


class EventBus:
    """Publish/subscribe channel with per-subscriber bounded queues.

    Args:
        max_pending: Queue bound per subscriber. On overflow the oldest
            undelivered event is dropped and logged.
    """

    def __init__(self, max_pending: int = 1000) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._max_pending = max_pending
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> Subscription:
        subscription = Subscription(handler=handler)
        with self._lock:
            self._subscriptions = [*self._subscriptions, subscription]
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s is not subscription]

    def pending(self, subscription: Subscription) -> list[Event]:
        with self._lock:
            return list(subscription.pending)

    def publish(self, event: Event) -> None:
        """Queue an event for every subscriber, then try to deliver."""
        with self._lock:
            subscriptions = self._subscriptions
            for sub in subscriptions:
                if len(sub.pending) >= self._max_pending:
                    dropped = sub.pending.popleft()
                    logger.error("Event queue full, dropping %s", dropped.event_id)
                sub.pending.append(event)
        logger.debug("Published %s", event.event_id)
        for sub in subscriptions:
            self._deliver(sub)

    def flush(self) -> None:
        """Retry delivery of everything still queued."""
        for sub in self._subscriptions:
            self._deliver(sub)

    def _deliver(self, sub: Subscription) -> None:
        while sub.pending:
            # Another thread (or an outer frame of this one) is already draining.
            if not sub.delivering.acquire(blocking=False):
                return
            try:
                while True:
                    with self._lock:
                        if not sub.pending:
                            break
                        event = sub.pending[0]
                    try:
                        sub.handler(event)
                    except Exception:
                        logger.exception("Event handler failed for %s, will redeliver", event.event_id)
                        return
                    with self._lock:
                        if sub.pending and sub.pending[0] is event:
                            sub.pending.popleft()
            finally:
                sub.delivering.release()
