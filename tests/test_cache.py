from hospital_intake.code_utils.cache import QueueCache
from hospital_intake.code_utils.models import IntakeEntry


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _entry(entry_id, position):
    return IntakeEntry(
        patient_id=1,
        hospital_id=1,
        document_ref="sha256:x",
        submitted_at="2026-01-01T00:00:00Z",
        queue_position=position,
        id=entry_id,
    )


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = QueueCache(ttl_seconds=30, clock=clock)
    cache.put(1, [_entry(1, 1)])

    clock.now += 29
    assert cache.get(1) is not None
    clock.now += 1
    assert cache.get(1) is None


def test_invalidate_is_scoped_to_one_hospital():
    cache = QueueCache(ttl_seconds=30)
    cache.put(1, [_entry(1, 1)])
    cache.put(2, [_entry(2, 1)])

    cache.invalidate(1)

    assert cache.get(1) is None
    assert [e.id for e in cache.get(2)] == [2]


def test_put_with_stale_generation_is_dropped():
    cache = QueueCache(ttl_seconds=30)
    generation = cache.generation(1)

    # A write lands between the reader's query and its put.
    cache.invalidate(1)

    assert cache.put(1, [_entry(1, 1)], generation) is False
    assert cache.get(1) is None
    assert cache.put(1, [_entry(1, 1)], cache.generation(1)) is True


def test_stored_version_mismatch_is_a_miss():
    cache = QueueCache(ttl_seconds=30)
    cache.put(1, [_entry(1, 1)], version=4)

    assert [e.id for e in cache.get(1, version=4)] == [1]
    assert cache.get(1, version=5) is None
    # The stale list is dropped, not kept for an older version.
    assert cache.get(1, version=4) is None


def test_zero_ttl_disables_caching():
    cache = QueueCache(ttl_seconds=0)
    assert cache.put(1, [_entry(1, 1)]) is False
    assert cache.get(1) is None


def test_clear_drops_everything():
    cache = QueueCache(ttl_seconds=30)
    cache.put(1, [_entry(1, 1)])
    before = cache.generation(1)

    cache.clear()

    assert cache.get(1) is None
    assert cache.generation(1) == before + 1
