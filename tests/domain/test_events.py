"""Tests for tally.domain.events."""

import logging
from datetime import date

import pytest

from tally.domain.events import BudgetThresholdCrossed, EventBus, GoalMilestoneReached, RecurringTransactionPosted
from tally.domain.models import BudgetId, GoalId, TemplateId, TransactionId


def _milestone(n: int) -> GoalMilestoneReached:
    return GoalMilestoneReached(goal_id=GoalId(1), milestone=n)


class TestEventIds:
    """Tests for stable event ids."""

    def test_ids_are_stable(self) -> None:
        """Should derive ids from the event's identifying fields."""
        crossed = BudgetThresholdCrossed(
            budget_id=BudgetId(3), threshold=80, period_start=date(2025, 1, 1), instant=date(2025, 1, 20)
        )
        again = BudgetThresholdCrossed(
            budget_id=BudgetId(3), threshold=80, period_start=date(2025, 1, 1), instant=date(2025, 1, 25)
        )
        posted = RecurringTransactionPosted(
            transaction_id=TransactionId(9), template_id=TemplateId(2), date=date(2025, 1, 1)
        )

        assert crossed.event_id == again.event_id == "budget:3:80:2025-01-01"
        assert posted.event_id == "recurring:2:9"
        assert _milestone(50).event_id == "goal:1:50"


class TestEventBus:
    """Tests for EventBus delivery."""

    def test_delivers_to_every_subscriber_in_order(self) -> None:
        bus = EventBus()
        first: list = []
        second: list = []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.publish(_milestone(25))
        bus.publish(_milestone(50))

        assert [e.milestone for e in first] == [25, 50]
        assert first == second

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list = []
        subscription = bus.subscribe(received.append)
        bus.unsubscribe(subscription)

        bus.publish(_milestone(25))
        assert received == []

    def test_failing_handler_gets_event_again(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should keep an event queued until its handler succeeds."""
        bus = EventBus()
        seen: list = []
        healthy: list = []

        def flaky(event):
            seen.append(event)
            if len(seen) == 1:
                raise RuntimeError("boom")

        subscription = bus.subscribe(flaky)
        bus.subscribe(healthy.append)

        with caplog.at_level(logging.ERROR):
            bus.publish(_milestone(25))

        assert "will redeliver" in caplog.text
        assert bus.pending(subscription) == [_milestone(25)]
        assert healthy == [_milestone(25)]

        bus.flush()
        assert seen == [_milestone(25), _milestone(25)]
        assert bus.pending(subscription) == []

    def test_overflow_drops_oldest(self, caplog: pytest.LogCaptureFixture) -> None:
        """Should drop the oldest undelivered event when a queue is full."""
        bus = EventBus(max_pending=2)
        delivered: list = []
        failing = True

        def handler(event):
            if failing:
                raise RuntimeError("down")
            delivered.append(event)

        bus.subscribe(handler)
        with caplog.at_level(logging.ERROR):
            for n in (25, 50, 75):
                bus.publish(_milestone(n))

        assert "dropping goal:1:25" in caplog.text
        failing = False
        bus.flush()
        assert [e.milestone for e in delivered] == [50, 75]

    def test_handler_may_publish(self) -> None:
        """Should deliver events published from inside a handler."""
        bus = EventBus()
        received: list = []

        def handler(event):
            received.append(event.milestone)
            if event.milestone == 25:
                bus.publish(_milestone(50))

        bus.subscribe(handler)
        bus.publish(_milestone(25))

        assert received == [25, 50]

    def test_rejects_empty_queue_bound(self) -> None:
        with pytest.raises(ValueError):
            EventBus(max_pending=0)
