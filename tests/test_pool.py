import asyncio

import pytest

from relaypool import ConfigurationError, KeyPool, NoAvailableKeysError


class Clock:
    def __init__(self, t=1_000.0):
        self.t = t

    def __call__(self):
        return self.t


def _pool(credentials, monkeypatch, **kwargs):
    pool = KeyPool(credentials, **kwargs)
    clock = Clock()
    monkeypatch.setattr(pool, "_now", clock)
    return pool, clock


async def _take(pool, n):
    return [(await pool.take_key()).credential for _ in range(n)]


@pytest.mark.asyncio
async def test_round_robin_visits_each_key_once(monkeypatch):
    pool, _ = _pool(["A", "B", "C"], monkeypatch)
    assert await _take(pool, 3) == ["A", "B", "C"]
    assert await _take(pool, 3) == ["A", "B", "C"]
    assert [k.usage_count for k in pool.keys] == [2, 2, 2]


@pytest.mark.asyncio
async def test_selection_records_usage(monkeypatch):
    pool, clock = _pool(["A"], monkeypatch)
    entry = await pool.take_key()
    assert entry.usage_count == 1
    assert entry.last_used_at == clock.t


@pytest.mark.asyncio
async def test_cooldown_excludes_until_elapsed(monkeypatch):
    pool, clock = _pool(["A", "B"], monkeypatch, cooldown_seconds=60)
    a = pool.keys[0]
    pool.mark_rate_limited(a)
    assert pool.active_count() == 1
    assert await _take(pool, 3) == ["B", "B", "B"]

    clock.t += 59.9
    assert not a.is_active(clock.t)
    clock.t += 0.2
    assert pool.active_count() == 2
    assert "A" in await _take(pool, 2)


@pytest.mark.asyncio
async def test_rearming_cooldown_replaces_expiry(monkeypatch):
    pool, clock = _pool(["A"], monkeypatch, cooldown_seconds=60)
    a = pool.keys[0]
    pool.mark_rate_limited(a)
    clock.t += 10
    pool.mark_rate_limited(a)
    assert a.cooldown_until == clock.t + 60


@pytest.mark.asyncio
async def test_all_keys_cooling_down(monkeypatch):
    pool, _ = _pool(["A", "B"], monkeypatch)
    for k in pool.keys:
        pool.mark_rate_limited(k)
    with pytest.raises(NoAvailableKeysError):
        await pool.take_key()


@pytest.mark.asyncio
async def test_rotation_skips_cooling_key_and_resumes(monkeypatch):
    pool, clock = _pool(["A", "B", "C"], monkeypatch, cooldown_seconds=60)
    assert await _take(pool, 4) == ["A", "B", "C", "A"]

    b = await pool.take_key()
    assert b.credential == "B"
    pool.mark_rate_limited(b)
    assert await _take(pool, 5) == ["C", "A", "C", "A", "C"]

    clock.t += 61
    assert await _take(pool, 3) == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_concurrent_selections_lose_no_updates(monkeypatch):
    pool, _ = _pool(["A", "B", "C"], monkeypatch)
    picked = await asyncio.gather(*(pool.take_key() for _ in range(30)))
    assert len(picked) == 30
    assert [k.usage_count for k in pool.keys] == [10, 10, 10]


@pytest.mark.asyncio
async def test_reload_replaces_and_resets(monkeypatch):
    source = {"keys": ["A", "B"]}
    pool = KeyPool.from_loader(lambda: list(source["keys"]))
    await pool.take_key()
    pool.mark_rate_limited(pool.keys[1])
    old = pool.keys

    source["keys"] = ["A", "C", "D"]
    result = await pool.reload()
    assert (result.previous_count, result.key_count) == (2, 3)
    assert pool.generation == 2
    assert all(k not in old for k in pool.keys)
    assert [k.credential for k in pool.keys] == ["A", "C", "D"]
    assert all(k.usage_count == 0 and k.last_used_at is None for k in pool.keys)
    assert pool.active_count() == 3
    assert (await pool.take_key()).credential == "A"


@pytest.mark.asyncio
async def test_failed_reload_leaves_pool_untouched():
    source = {"keys": ["A", "B"]}

    def load():
        if not source["keys"]:
            raise ConfigurationError("No API keys found")
        return list(source["keys"])

    pool = KeyPool.from_loader(load)
    await pool.take_key()
    pool.mark_rate_limited(pool.keys[1])
    before = [(k, k.usage_count, k.cooldown_until) for k in pool.keys]

    source["keys"] = []
    with pytest.raises(ConfigurationError):
        await pool.reload()
    assert [(k, k.usage_count, k.cooldown_until) for k in pool.keys] == before
    assert pool.generation == 1


@pytest.mark.asyncio
async def test_reload_without_loader():
    pool = KeyPool(["A"])
    with pytest.raises(ConfigurationError):
        await pool.reload()


@pytest.mark.asyncio
async def test_stats_identify_keys_by_index_only(monkeypatch):
    pool, _ = _pool(["sk-secret-one", "sk-secret-two"], monkeypatch)
    await pool.take_key()
    pool.mark_rate_limited(pool.keys[1])
    stats = pool.stats()
    assert stats["totalKeys"] == 2
    assert stats["activeKeys"] == 1
    assert stats["keyStats"][0]["requestCount"] == 1
    assert stats["keyStats"][1]["lastUsed"] == "Never"
    assert stats["keyStats"][1]["isActive"] is False
    assert "sk-secret" not in str(stats)
