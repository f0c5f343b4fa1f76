from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import func

from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError
from .models import LoginAttempt

log = logging.getLogger('authserver.ratelimit')


def attempt_keys(username: str | None, ip_address: str | None) -> list[str]:
    keys = []
    if username:
        keys.append(f'user:{username.lower()}')
    if ip_address:
        keys.append(f'ip:{ip_address}')
    return keys


class LoginRateLimiter:
    """Sliding-window counter of login attempts, shared through the database.

    An attempt is recorded *before* the password is checked and counted in the
    same write transaction, so concurrent attempts queue behind each other and
    at most ``max_attempts`` of them are ever let through inside one window.
    A successful login releases its own attempt.
    """

    def __init__(self, db, max_attempts: int, window_seconds: int, clock: Clock):
        self.db = db
        self.max_attempts = max_attempts
        self.window = window_seconds
        self.clock = clock

    def acquire(self, keys: Iterable[str]):
        """Record one attempt for every key.

        ``Ok(attempt_ids)`` when every key is still within the limit, else
        ``Err(too_many_attempts)`` and nothing is recorded.
        """
        keys = list(keys)
        if not keys:
            return Ok([])
        now = now_int(self.clock)
        since = now - self.window
        retry_after = 0
        with self.db.session() as s:
            # drop rows that can no longer count towards any window
            s.query(LoginAttempt).filter(LoginAttempt.attempted_at <= since) \
                .delete(synchronize_session=False)
            attempts = [LoginAttempt(key=k, attempted_at=now) for k in keys]
            s.add_all(attempts)
            s.flush()
            for key in keys:
                count, oldest = (
                    s.query(func.count(LoginAttempt.id), func.min(LoginAttempt.attempted_at))
                    .filter(LoginAttempt.key == key, LoginAttempt.attempted_at > since)
                    .one()
                )
                if count > self.max_attempts:
                    retry_after = max(retry_after, oldest + self.window - now)
            if retry_after:
                for attempt in attempts:
                    s.delete(attempt)
            ids = [a.id for a in attempts]
        if retry_after:
            log.info('login attempts throttled for %s', ', '.join(keys))
            return Err(OAuthError.too_many_attempts(retry_after))
        return Ok(ids)

    def release(self, attempt_ids: Iterable[int]) -> None:
        """Forget attempts that turned out to be successful logins."""
        attempt_ids = list(attempt_ids)
        if not attempt_ids:
            return
        with self.db.session() as s:
            s.query(LoginAttempt).filter(LoginAttempt.id.in_(attempt_ids)).delete(synchronize_session=False)

    def reset(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        with self.db.session() as s:
            s.query(LoginAttempt).filter(LoginAttempt.key.in_(keys)).delete(synchronize_session=False)
