import pytest

from solana_wallet_tracker.errors import Cancelled
from solana_wallet_tracker.models import ProgressEvent, SyncStage
from solana_wallet_tracker.progress import CancellationToken, ProgressBus


def event(percent):
    return ProgressEvent(stage=SyncStage.FETCH_BALANCES, message="Scanning", progress_percent=percent)


class TestProgressBus:
    def test_every_subscriber_sees_events(self):
        bus = ProgressBus()
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        bus.publish(event(10))

        assert [e.progress_percent for e in first] == [10]
        assert [e.progress_percent for e in second] == [10]
        assert bus.latest.progress_percent == 10

    def test_unsubscribe(self):
        bus = ProgressBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        bus.publish(event(50))

        assert seen == []

    def test_failing_listener_does_not_stop_others(self):
        bus = ProgressBus()
        seen = []

        def broken(_):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.publish(event(20))

        assert len(seen) == 1


class TestCancellationToken:
    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel()

        assert token.cancelled
        with pytest.raises(Cancelled):
            token.raise_if_cancelled()

    def test_wait_returns_early_when_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert token.wait(5)
