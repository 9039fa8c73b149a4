import time

import pytest

from reminder_relay.errors import StoreUnavailable
from reminder_relay.persistence import Persistence


async def make_store(tmp_path, name="relay.db"):
    p = Persistence(str(tmp_path / name))
    await p.init_db()
    return p


def job_row(job_id, run_at, now=None, max_attempts=3):
    now = time.time() if now is None else now
    return {
        "id": job_id,
        "payload": {"email": "a@example.com", "link": "https://x", "label": "Two Sum"},
        "max_attempts": max_attempts,
        "delay_seconds": max(0.0, run_at - now),
        "run_at": run_at,
        "created_at": now,
    }


@pytest.mark.asyncio
async def test_counter_increment_and_reset(tmp_path):
    p = await make_store(tmp_path)
    assert await p.get_counter("sendgrid_count") == 0
    assert await p.increment_counter("sendgrid_count") == 1
    assert await p.increment_counter("sendgrid_count") == 2
    await p.reset_counters(["sendgrid_count", "gmail_count_0"])
    assert await p.get_counters(["sendgrid_count", "gmail_count_0"]) == {"sendgrid_count": 0, "gmail_count_0": 0}
    assert await p.increment_counter("sendgrid_count") == 1


@pytest.mark.asyncio
async def test_set_counter_overwrites_value(tmp_path):
    p = await make_store(tmp_path)
    await p.set_counter("router:rotation", 3)
    assert await p.get_counter("router:rotation") == 3
    await p.set_counter("router:rotation", 1)
    assert await p.get_counter("router:rotation") == 1


@pytest.mark.asyncio
async def test_increment_window_sets_expiry_once(tmp_path):
    p = await make_store(tmp_path)
    now = 10_000.0
    count, expires_at = await p.increment_window("ratelimit:ip:2", 3600, now)
    assert (count, expires_at) == (1, now + 3600)

    count, expires_at = await p.increment_window("ratelimit:ip:2", 3600, now + 100)
    assert (count, expires_at) == (2, now + 3600)

    # an expired key starts over with a fresh expiry
    count, expires_at = await p.increment_window("ratelimit:ip:2", 3600, now + 4000)
    assert (count, expires_at) == (1, now + 4000 + 3600)


@pytest.mark.asyncio
async def test_expired_counters_read_as_zero_and_are_purged(tmp_path):
    p = await make_store(tmp_path)
    past = time.time() - 7200
    await p.increment_window("ratelimit:ip:old", 3600, past)
    assert await p.get_counter("ratelimit:ip:old") == 0
    assert await p.purge_expired_counters(time.time()) == 1
    assert await p.purge_expired_counters(time.time()) == 0


@pytest.mark.asyncio
async def test_reset_window_is_compare_and_set(tmp_path):
    p = await make_store(tmp_path)
    await p.increment_counter("sendgrid_count")

    assert await p.reset_window("quota:window_start", None, 1000, ["sendgrid_count"]) is True
    assert await p.get_counter("sendgrid_count") == 0
    assert await p.get_counter("quota:window_start") == 1000

    await p.increment_counter("sendgrid_count")
    # a second worker holding the old view loses the race
    assert await p.reset_window("quota:window_start", None, 1001, ["sendgrid_count"]) is False
    assert await p.get_counter("sendgrid_count") == 1
    assert await p.get_counter("quota:window_start") == 1000


@pytest.mark.asyncio
async def test_claim_takes_earliest_due_job(tmp_path):
    p = await make_store(tmp_path)
    now = time.time()
    await p.insert_job(job_row("later", now + 3600, now))
    await p.insert_job(job_row("second", now - 5, now))
    await p.insert_job(job_row("first", now - 10, now))

    job = await p.claim_next_job(now=now, lease_until=now + 300, lease_token="tok")
    assert job["id"] == "first"
    assert job["state"] == "active"
    assert job["lease_token"] == "tok"
    assert job["payload"]["label"] == "Two Sum"

    job = await p.claim_next_job(now=now, lease_until=now + 300, lease_token="tok2")
    assert job["id"] == "second"
    assert await p.claim_next_job(now=now, lease_until=now + 300, lease_token="tok3") is None


@pytest.mark.asyncio
async def test_complete_requires_lease_token(tmp_path):
    p = await make_store(tmp_path)
    now = time.time()
    await p.insert_job(job_row("j1", now, now))
    job = await p.claim_next_job(now=now, lease_until=now + 300, lease_token="mine")

    assert await p.complete_job(job["id"], "other", now) is False
    assert await p.complete_job(job["id"], "mine", now) is True
    stored = await p.get_job("j1")
    assert stored["state"] == "completed"
    assert stored["lease_token"] is None
    assert stored["finished_at"] == pytest.approx(now)


@pytest.mark.asyncio
async def test_fail_job_reschedules_then_terminates(tmp_path):
    p = await make_store(tmp_path)
    now = time.time()
    await p.insert_job(job_row("j1", now, now, max_attempts=2))

    job = await p.claim_next_job(now=now, lease_until=now + 300, lease_token="t1")
    updated = await p.fail_job("j1", "t1", error="boom", now=now, retry_at=now + 2)
    assert updated["state"] == "waiting"
    assert updated["attempts"] == 1
    assert updated["run_at"] == pytest.approx(now + 2)
    assert updated["error"] == "boom"

    job = await p.claim_next_job(now=now + 2, lease_until=now + 302, lease_token="t2")
    assert job["id"] == "j1"
    updated = await p.fail_job("j1", "t2", error="boom again", now=now + 2, retry_at=now + 4)
    assert updated["state"] == "failed"
    assert updated["attempts"] == 2
    assert updated["finished_at"] == pytest.approx(now + 2)

    # stale holders cannot touch the job any more
    assert await p.fail_job("j1", "t2", error="late", now=now + 3, retry_at=now + 5) is None


@pytest.mark.asyncio
async def test_stalled_jobs_and_inspection(tmp_path):
    p = await make_store(tmp_path)
    now = time.time()
    await p.insert_job(job_row("active", now - 1, now))
    await p.insert_job(job_row("waiting", now + 60, now))
    await p.claim_next_job(now=now, lease_until=now + 10, lease_token="t")

    assert await p.fetch_stalled_jobs(now) == []
    stalled = await p.fetch_stalled_jobs(now + 11)
    assert [job["id"] for job in stalled] == ["active"]

    assert await p.count_jobs_by_state(now) == {"active": 1, "waiting": 1}
    assert await p.count_jobs_by_state(now + 61) == {"active": 1, "ready": 1}
    listed = await p.list_jobs(state="waiting")
    assert [job["id"] for job in listed] == ["waiting"]
    assert len(await p.list_jobs()) == 2


@pytest.mark.asyncio
async def test_purge_keeps_newest_failed_jobs(tmp_path):
    p = await make_store(tmp_path)
    now = time.time()
    for n in range(3):
        await p.insert_job(job_row(f"f{n}", now, now, max_attempts=1))
        await p.claim_next_job(now=now, lease_until=now + 300, lease_token=f"t{n}")
        await p.fail_job(f"f{n}", f"t{n}", error="x", now=now + n, retry_at=now + n)
    await p.insert_job(job_row("done", now, now))
    await p.claim_next_job(now=now, lease_until=now + 300, lease_token="td")
    await p.complete_job("done", "td", now)

    assert await p.purge_finished_jobs(keep_failed=2) == 2
    remaining = await p.list_jobs()
    assert sorted(job["id"] for job in remaining) == ["f1", "f2"]


@pytest.mark.asyncio
async def test_unreachable_store_raises_store_unavailable(tmp_path):
    p = Persistence(str(tmp_path / "missing-dir" / "relay.db"))
    with pytest.raises(StoreUnavailable):
        await p.init_db()
    with pytest.raises(StoreUnavailable):
        await p.increment_counter("sendgrid_count")


@pytest.mark.asyncio
async def test_ping_round_trips_through_counters(tmp_path):
    p = await make_store(tmp_path)
    before = int(time.time())
    value = await p.ping()
    assert before <= value <= int(time.time())
    assert await p.get_counter("health:ping") == value

    broken = Persistence(str(tmp_path / "missing-dir" / "relay.db"))
    with pytest.raises(StoreUnavailable):
        await broken.ping()
