from __future__ import annotations

import threading

from linkbot.rate_limiter import CLEANUP_JOB_ID, RateLimiter, format_retry_time


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DummyScheduler:
    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, object]] = {}

    def add_job(self, func, trigger=None, id=None, replace_existing=False, **kwargs):
        self.jobs[id] = {"func": func, "trigger": trigger, **kwargs}

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]


def test_remaining_decreases_until_rejected() -> None:
    clock = FakeClock()
    limiter = RateLimiter(window_seconds=60, max_requests=5, clock=clock)

    remaining = [limiter.check_limit("u1", "unread").remaining for _ in range(5)]
    assert remaining == [4, 3, 2, 1, 0]

    clock.advance(10.2)
    blocked = limiter.check_limit("u1", "unread")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after == 50

    # 拒否はカウントを進めない
    assert limiter.get_stats()["total_requests"] == 5


def test_window_resets_after_expiry() -> None:
    clock = FakeClock()
    limiter = RateLimiter(window_seconds=60, max_requests=3, clock=clock)
    for _ in range(3):
        limiter.check_limit("u1", "unread")
    assert limiter.check_limit("u1", "unread").allowed is False

    clock.advance(60)
    result = limiter.check_limit("u1", "unread")
    assert result.allowed is True
    assert result.remaining == 2
    assert result.reset_time == clock.now + 60


def test_keys_are_per_user_and_command() -> None:
    limiter = RateLimiter(max_requests=1, clock=FakeClock())
    assert limiter.check_limit("u1", "unread").allowed
    assert not limiter.check_limit("u1", "unread").allowed
    assert limiter.check_limit("u1", "status").allowed
    assert limiter.check_limit("u2", "unread").allowed


def test_get_limit_info_does_not_mutate() -> None:
    limiter = RateLimiter(max_requests=2, clock=FakeClock())
    info = limiter.get_limit_info("u1", "unread")
    assert info.remaining == 2
    assert info.allowed

    limiter.check_limit("u1", "unread")
    for _ in range(3):
        assert limiter.get_limit_info("u1", "unread").remaining == 1
    assert limiter.check_limit("u1", "unread").remaining == 0


def test_reset_limit_and_reset_user_limits() -> None:
    limiter = RateLimiter(max_requests=1, clock=FakeClock())
    limiter.check_limit("u1", "unread")
    limiter.check_limit("u1", "status")
    limiter.check_limit("u10", "unread")

    limiter.reset_limit("u1", "unread")
    assert limiter.check_limit("u1", "unread").allowed
    assert not limiter.check_limit("u1", "status").allowed

    # "u1:" の接頭辞のみ対象（u10 は残る）
    assert limiter.reset_user_limits("u1") == 2
    assert limiter.check_limit("u1", "status").allowed
    assert not limiter.check_limit("u10", "unread").allowed


def test_disabled_mode_is_unlimited() -> None:
    scheduler = DummyScheduler()
    limiter = RateLimiter(max_requests=1, enabled=False, clock=FakeClock())
    for _ in range(50):
        result = limiter.check_limit("u1", "unread")
        assert result.allowed
        assert result.remaining is None
        assert result.is_unlimited

    limiter.start(scheduler)
    assert scheduler.jobs == {}
    assert limiter.get_stats()["total_entries"] == 0


def test_cleanup_removes_only_expired_windows() -> None:
    clock = FakeClock()
    limiter = RateLimiter(window_seconds=60, clock=clock)
    limiter.check_limit("u1", "unread")
    clock.advance(30)
    limiter.check_limit("u2", "unread")
    clock.advance(31)

    stats = limiter.get_stats()
    assert stats["expired_entries"] == 1
    assert stats["active_users"] == 1

    assert limiter.cleanup() == 1
    assert limiter.get_stats()["total_entries"] == 1


def test_start_stop_and_destroy() -> None:
    scheduler = DummyScheduler()
    limiter = RateLimiter(cleanup_interval=120, clock=FakeClock())
    limiter.start(scheduler)
    job = scheduler.get_job(CLEANUP_JOB_ID)
    assert job is not None
    assert job["trigger"] == "interval"
    assert job["seconds"] == 120

    limiter.check_limit("u1", "unread")
    limiter.destroy()
    assert scheduler.get_job(CLEANUP_JOB_ID) is None
    assert limiter.get_stats()["total_entries"] == 0


def test_concurrent_checks_never_exceed_limit() -> None:
    limiter = RateLimiter(max_requests=5, clock=FakeClock())
    barrier = threading.Barrier(20)
    allowed: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        result = limiter.check_limit("u1", "unread")
        with lock:
            allowed.append(result.allowed)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert allowed.count(True) == 5


def test_format_retry_time() -> None:
    assert format_retry_time(1) == "1秒"
    assert format_retry_time(59) == "59秒"
    assert format_retry_time(60) == "1分"
    assert format_retry_time(61) == "2分"
    assert format_retry_time(3600) == "1時間"
    assert format_retry_time(3601) == "2時間"
