from __future__ import annotations

import threading

from customapp.src.backoff import ExponentialBackoff
from customapp.src.workqueue import WorkQueue


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_queue(clock: FakeClock | None = None) -> WorkQueue:
    return WorkQueue(
        ExponentialBackoff(base=1.0, cap=30.0, jitter=0.0),
        clock=clock or FakeClock(),
    )


def test_duplicate_adds_collapse_into_one_entry() -> None:
    queue = _make_queue()

    queue.add("a")
    queue.add("a")
    queue.add("b")
    queue.add("a")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "a"
    assert queue.get(timeout=0) == "b"
    assert queue.get(timeout=0) is None


def test_key_added_while_processing_is_requeued_on_done() -> None:
    queue = _make_queue()
    queue.add("a")

    key = queue.get(timeout=0)
    queue.add("a")

    # Not handed to a second worker while the first still holds it.
    assert len(queue) == 0
    assert queue.get(timeout=0) is None
    assert queue.is_processing("a")

    queue.done(key)

    assert not queue.is_processing("a")
    assert queue.get(timeout=0) == "a"


def test_done_without_changes_does_not_requeue() -> None:
    queue = _make_queue()
    queue.add("a")

    queue.done(queue.get(timeout=0))

    assert len(queue) == 0


def test_add_after_waits_for_the_delay() -> None:
    clock = FakeClock()
    queue = _make_queue(clock)

    queue.add_after("a", 5.0)
    assert queue.get(timeout=0) is None

    clock.advance(4.9)
    assert queue.get(timeout=0) is None

    clock.advance(0.2)
    assert queue.get(timeout=0) == "a"


def test_add_after_keeps_earliest_due_time() -> None:
    clock = FakeClock()
    queue = _make_queue(clock)

    queue.add_after("a", 2.0)
    queue.add_after("a", 10.0)

    clock.advance(2.0)
    assert queue.get(timeout=0) == "a"


def test_add_after_earlier_due_time_replaces_later_one() -> None:
    clock = FakeClock()
    queue = _make_queue(clock)

    queue.add_after("a", 10.0)
    queue.add_after("a", 1.0)

    clock.advance(1.0)
    assert queue.get(timeout=0) == "a"
    queue.done("a")

    clock.advance(20.0)
    assert queue.get(timeout=0) is None


def test_add_after_with_zero_delay_adds_immediately() -> None:
    queue = _make_queue()

    queue.add_after("a", 0)

    assert queue.get(timeout=0) == "a"


def test_add_rate_limited_grows_delay_until_forget() -> None:
    clock = FakeClock()
    queue = _make_queue(clock)

    assert queue.add_rate_limited("a") == 1.0
    assert queue.add_rate_limited("a") == 2.0
    assert queue.add_rate_limited("a") == 4.0
    assert queue.num_requeues("a") == 3

    queue.forget("a")

    assert queue.num_requeues("a") == 0
    assert queue.add_rate_limited("a") == 1.0


def test_parked_key_promoted_while_processing_is_marked_dirty() -> None:
    clock = FakeClock()
    queue = _make_queue(clock)
    queue.add("a")
    key = queue.get(timeout=0)

    queue.add_after("a", 1.0)
    clock.advance(1.0)
    assert queue.get(timeout=0) is None

    queue.done(key)
    assert queue.get(timeout=0) == "a"


def test_get_blocks_until_key_is_added() -> None:
    queue = WorkQueue(ExponentialBackoff(jitter=0.0))
    received: list[str | None] = []

    worker = threading.Thread(target=lambda: received.append(queue.get(timeout=5.0)))
    worker.start()
    queue.add("a")
    worker.join(timeout=5.0)

    assert received == ["a"]


def test_shut_down_discards_pending_keys_and_wakes_getters() -> None:
    queue = WorkQueue(ExponentialBackoff(jitter=0.0))
    received: list[str | None] = []
    worker = threading.Thread(target=lambda: received.append(queue.get()))
    worker.start()

    queue.shut_down()
    worker.join(timeout=5.0)

    assert received == [None]
    queue.add("a")
    queue.add_after("b", 1.0)
    assert len(queue) == 0
    assert queue.get(timeout=0) is None
    assert queue.shutting_down


def test_shut_down_drops_queued_and_parked_keys() -> None:
    queue = _make_queue()
    queue.add("a")
    queue.add_after("b", 5.0)

    queue.shut_down()

    assert len(queue) == 0
    assert queue.get(timeout=0) is None


def test_shut_down_with_drain_waits_for_in_flight_key() -> None:
    queue = WorkQueue(ExponentialBackoff(jitter=0.0))
    queue.add("a")
    key = queue.get(timeout=0)

    finisher = threading.Timer(0.05, queue.done, args=(key,))
    finisher.start()

    assert queue.shut_down_with_drain(timeout=5.0) is True
    finisher.join()


def test_shut_down_with_drain_times_out() -> None:
    queue = WorkQueue(ExponentialBackoff(jitter=0.0))
    queue.add("a")
    queue.get(timeout=0)

    assert queue.shut_down_with_drain(timeout=0.05) is False


def test_done_after_shutdown_does_not_requeue() -> None:
    queue = _make_queue()
    queue.add("a")
    key = queue.get(timeout=0)
    queue.add("a")

    queue.shut_down()
    queue.done(key)

    assert len(queue) == 0
