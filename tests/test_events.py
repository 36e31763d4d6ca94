"""Tests for the event broadcaster and graceful shutdown."""

import threading
from unittest.mock import MagicMock

from phaseflow.lib.events import EventBroadcaster
from phaseflow.runner.shutdown import ShutdownManager


class TestEventBroadcaster:
    """Fan-out to subscriptions with private queues."""

    def test_every_subscriber_gets_event(self):
        broadcaster = EventBroadcaster()
        a = broadcaster.subscribe()
        b = broadcaster.subscribe()
        broadcaster.publish("issue_updated", {"number": 1})
        assert a.get(timeout=1).payload == {"number": 1}
        assert b.get(timeout=1).payload == {"number": 1}

    def test_sequence_numbers_increase(self):
        broadcaster = EventBroadcaster()
        with broadcaster.subscribe() as sub:
            broadcaster.publish("a")
            broadcaster.publish("b")
            events = sub.drain()
        assert [e.seq for e in events] == [1, 2]
        assert [e.type for e in events] == ["a", "b"]

    def test_type_filter(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe(types={"state_rebuilt"})
        broadcaster.publish("issue_updated")
        broadcaster.publish("state_rebuilt")
        assert [e.type for e in sub.drain()] == ["state_rebuilt"]

    def test_context_exit_detaches(self):
        broadcaster = EventBroadcaster()
        with broadcaster.subscribe():
            assert broadcaster.subscriber_count == 1
        assert broadcaster.subscriber_count == 0

    def test_detach_on_exception(self):
        broadcaster = EventBroadcaster()
        try:
            with broadcaster.subscribe():
                raise RuntimeError("observer crashed")
        except RuntimeError:
            pass
        assert broadcaster.subscriber_count == 0

    def test_full_queue_drops_instead_of_blocking(self):
        broadcaster = EventBroadcaster(maxsize=2)
        sub = broadcaster.subscribe()
        for _ in range(5):
            broadcaster.publish("issue_updated")
        assert len(sub.drain()) == 2
        assert sub.dropped == 3

    def test_get_timeout_returns_none(self):
        sub = EventBroadcaster().subscribe()
        assert sub.get(timeout=0.01) is None

    def test_close_detaches_all(self):
        broadcaster = EventBroadcaster()
        subs = [broadcaster.subscribe() for _ in range(3)]
        broadcaster.close()
        assert broadcaster.subscriber_count == 0
        assert all(s.closed for s in subs)

    def test_concurrent_publishers(self):
        broadcaster = EventBroadcaster()
        sub = broadcaster.subscribe()

        def publish_many():
            for _ in range(100):
                broadcaster.publish("issue_updated")

        threads = [threading.Thread(target=publish_many) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        events = sub.drain()
        assert len(events) == 400
        assert len({e.seq for e in events}) == 400


class TestShutdownManager:
    """Take-downs run once, newest first."""

    def test_runs_takedowns_lifo(self):
        manager = ShutdownManager()
        order = []
        manager.register("first", lambda: order.append("first"))
        manager.register("second", lambda: order.append("second"))
        manager.shutdown()
        assert order == ["second", "first"]
        assert manager.shutting_down

    def test_unregistered_takedown_not_run(self):
        manager = ShutdownManager()
        action = MagicMock()
        handle = manager.register("phase", action)
        manager.unregister(handle)
        manager.shutdown()
        action.assert_not_called()

    def test_failing_takedown_does_not_stop_others(self):
        manager = ShutdownManager()
        after = MagicMock()
        manager.register("ok", after)
        manager.register("broken", MagicMock(side_effect=RuntimeError("boom")))
        manager.shutdown()
        after.assert_called_once()

    def test_takedowns_run_once(self):
        manager = ShutdownManager()
        action = MagicMock()
        manager.register("phase", action)
        manager.shutdown()
        manager.shutdown()
        action.assert_called_once()

    def test_context_manager_restores_handlers(self):
        import signal
        before = signal.getsignal(signal.SIGTERM)
        with ShutdownManager():
            assert signal.getsignal(signal.SIGTERM) != before
        assert signal.getsignal(signal.SIGTERM) == before
