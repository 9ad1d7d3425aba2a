from __future__ import annotations

import threading

from transaction_intelligence.models import ProgressPayload
from transaction_intelligence.progress import InMemoryProgressStore, ProgressStore


def _payload(processed: int) -> ProgressPayload:
    return ProgressPayload(
        phase="keyword", iteration=1, processed=processed, total=10, message="working"
    )


def test_store_satisfies_protocol():
    assert isinstance(InMemoryProgressStore(), ProgressStore)


def test_progress_round_trip_and_clear():
    store = InMemoryProgressStore()
    assert store.get_progress("u1") is None
    store.set_progress("u1", _payload(3))
    assert store.get_progress("u1") == _payload(3)
    assert store.get_progress("u2") is None
    store.clear_progress("u1")
    assert store.get_progress("u1") is None


def test_clearing_cancellation_drops_the_key():
    store = InMemoryProgressStore()
    store.set_cancellation("u1", True)
    assert store.is_cancelled("u1")
    assert len(store) == 1
    store.set_cancellation("u1", False)
    assert not store.is_cancelled("u1")
    assert len(store) == 0


def test_concurrent_writers_leave_a_consistent_snapshot():
    store = InMemoryProgressStore()

    def _writer(offset: int) -> None:
        for i in range(200):
            store.set_progress(f"user-{offset}", _payload(i))

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store) == 4
    assert all(store.get_progress(f"user-{n}").processed == 199 for n in range(4))


def test_payload_to_dict_copies_counts():
    payload = ProgressPayload(
        phase="done",
        iteration=2,
        processed=5,
        total=5,
        message="Completed",
        counts={"keyword": 3},
    )
    out = payload.to_dict()
    assert out["counts"] == {"keyword": 3}
    assert out["batch_index"] is None
