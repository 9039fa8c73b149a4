import pytest

from reminder_relay.persistence import Persistence
from reminder_relay.quota import QuotaStore, WINDOW_KEY

COUNTERS = ["sendgrid_count", "gmail_count_0", "gmail_count_1"]


async def make_quota(tmp_path, window_seconds=86400):
    p = Persistence(str(tmp_path / "quota.db"))
    await p.init_db()
    return QuotaStore(p, window_seconds=window_seconds)


@pytest.mark.asyncio
async def test_get_defaults_to_zero_and_increment_is_monotonic(tmp_path):
    quota = await make_quota(tmp_path)
    assert await quota.get("gmail_count_0") == 0
    assert [await quota.increment("gmail_count_0") for _ in range(3)] == [1, 2, 3]
    assert await quota.get("gmail_count_0") == 3


@pytest.mark.asyncio
async def test_reset_all_then_increment_reads_one(tmp_path):
    quota = await make_quota(tmp_path)
    for counter in COUNTERS:
        await quota.increment(counter)
    await quota.reset_all(COUNTERS)
    assert await quota.increment("sendgrid_count") == 1
    assert await quota.get("gmail_count_1") == 0


@pytest.mark.asyncio
async def test_roll_window_opens_then_resets_after_elapsed_window(tmp_path):
    quota = await make_quota(tmp_path, window_seconds=100)
    assert await quota.roll_window(COUNTERS, now=1_000) is True
    assert await quota.window_start() == 1_000

    await quota.increment("sendgrid_count")
    assert await quota.roll_window(COUNTERS, now=1_050) is False
    assert await quota.get("sendgrid_count") == 1

    assert await quota.roll_window(COUNTERS, now=1_100) is True
    assert await quota.get("sendgrid_count") == 0
    assert await quota.window_start() == 1_100


@pytest.mark.asyncio
async def test_snapshot_never_mutates(tmp_path):
    quota = await make_quota(tmp_path, window_seconds=100)
    await quota.roll_window(COUNTERS, now=1_000)
    await quota.increment("gmail_count_0")
    await quota.increment("gmail_count_0")

    assert await quota.snapshot(COUNTERS, now=1_010) == {
        "sendgrid_count": 0,
        "gmail_count_0": 2,
        "gmail_count_1": 0,
    }
    # stale window reported as already reset, stored values untouched
    assert await quota.snapshot(COUNTERS, now=2_000) == {name: 0 for name in COUNTERS}
    assert await quota.get("gmail_count_0") == 2
    assert await quota.persistence.get_counter(WINDOW_KEY) == 1_000


@pytest.mark.asyncio
async def test_rotation_offset_is_persisted(tmp_path):
    quota = await make_quota(tmp_path)
    assert await quota.get_rotation() == 0
    await quota.set_rotation(2)
    assert await quota.get_rotation() == 2
    assert await QuotaStore(quota.persistence).get_rotation() == 2
