import pytest

from trust_ledger.core.cache import AttestationCache, TTLCache
from trust_ledger.core.models import EnclaveProof
from trust_ledger.core.scoring import compute_trust_score


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _proof(blob_id: str = "blob-1") -> EnclaveProof:
    return EnclaveProof(
        blob_id=blob_id,
        expected_sha256="aa",
        computed_sha256="aa",
        verified=True,
        blob_size=3,
        gateway="https://gw.example",
        timestamp_ms=1,
        signature="00" * 64,
    )


def test_entries_expire():
    clock = FakeClock()
    cache: TTLCache[str] = TTLCache(ttl_seconds=10, clock=clock)
    cache.put("a", "value")
    clock.now = 9.9
    assert cache.get("a") == "value"
    clock.now = 10
    assert cache.get("a") is None
    assert len(cache) == 0


def test_oldest_entry_evicted_when_full():
    cache: TTLCache[int] = TTLCache(ttl_seconds=60, max_entries=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("a", 3)
    cache.put("c", 4)
    assert cache.get("b") is None
    assert cache.get("a") == 3
    assert cache.get("c") == 4


def test_invalidate_and_clear():
    cache: TTLCache[int] = TTLCache(ttl_seconds=60)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    cache.clear()
    assert len(cache) == 0


@pytest.mark.parametrize("ttl, size", [(0, 1), (-1, 1), (1, 0)])
def test_rejects_non_positive_bounds(ttl, size):
    with pytest.raises(ValueError):
        TTLCache(ttl_seconds=ttl, max_entries=size)


def test_new_attestation_replaces_cached(dataset):
    cache = AttestationCache(ttl_seconds=60)
    score = compute_trust_score(dataset)
    cache.record(_proof("old"), score)
    cache.record(_proof("new"), score)
    proof, cached_score = cache.get(dataset.id)
    assert proof.blob_id == "new"
    assert cached_score is score
    assert len(cache) == 1
