import threading

from authserver.models import LoginAttempt
from authserver.ratelimit import LoginRateLimiter, attempt_keys


def test_attempt_keys():
    assert attempt_keys('Alice', '10.0.0.1') == ['user:alice', 'ip:10.0.0.1']
    assert attempt_keys(None, '10.0.0.1') == ['ip:10.0.0.1']
    assert attempt_keys('', None) == []


def test_blocks_after_max_attempts_and_reports_retry_after(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=3, window_seconds=60, clock=clock)
    keys = attempt_keys('alice', '10.0.0.1')
    for _ in range(3):
        assert limiter.acquire(keys).ok
        clock.advance(5)
    blocked = limiter.acquire(keys)
    assert not blocked.ok
    assert blocked.error.status_code == 429
    # oldest attempt was 15s ago in a 60s window
    assert blocked.error.headers['Retry-After'] == '45'


def test_rejected_attempt_is_not_recorded(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=1, window_seconds=60, clock=clock)
    assert limiter.acquire(['user:alice']).ok
    for _ in range(3):
        assert not limiter.acquire(['user:alice']).ok
    with ext.db.session() as s:
        assert s.query(LoginAttempt).filter_by(key='user:alice').count() == 1


def test_window_slides(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=2, window_seconds=60, clock=clock)
    keys = ['user:alice']
    limiter.acquire(keys)
    limiter.acquire(keys)
    assert not limiter.acquire(keys).ok
    clock.advance(61)
    assert limiter.acquire(keys).ok


def test_keys_are_counted_independently(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=2, window_seconds=60, clock=clock)
    limiter.acquire(['user:alice', 'ip:1.1.1.1'])
    limiter.acquire(['user:bob', 'ip:1.1.1.1'])
    assert not limiter.acquire(['user:carol', 'ip:1.1.1.1']).ok
    assert limiter.acquire(['user:alice', 'ip:2.2.2.2']).ok


def test_release_forgets_a_successful_attempt(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=1, window_seconds=60, clock=clock)
    acquired = limiter.acquire(['user:alice'])
    limiter.release(acquired.value)
    assert limiter.acquire(['user:alice']).ok


def test_reset_clears_only_given_keys(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=1, window_seconds=60, clock=clock)
    limiter.acquire(['user:alice', 'ip:1.1.1.1'])
    limiter.reset(['user:alice'])
    assert limiter.acquire(['user:alice']).ok
    assert not limiter.acquire(['ip:1.1.1.1']).ok


def test_no_keys_is_never_limited(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=1, window_seconds=60, clock=clock)
    for _ in range(3):
        assert limiter.acquire([]).ok


def test_concurrent_attempts_cannot_exceed_the_limit(ext, clock):
    limiter = LoginRateLimiter(ext.db, max_attempts=5, window_seconds=300, clock=clock)
    attempts = 20
    barrier = threading.Barrier(attempts)
    allowed = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        result = limiter.acquire(['user:alice'])
        with lock:
            allowed.append(result.ok)

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert len(allowed) == attempts
    assert allowed.count(True) == 5
