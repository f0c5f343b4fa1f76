from __future__ import annotations

import logging
from dataclasses import dataclass

from werkzeug.security import check_password_hash, generate_password_hash

from .clock import Clock, now_int
from .errors import Ok, Err
from .models import User

log = logging.getLogger('authserver.users')

USER_STATUSES = ('active', 'locked', 'inactive')

# hash of a throwaway password, checked when the username is unknown so both
# paths cost the same
_DUMMY_HASH = generate_password_hash('not-a-real-password')


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    status: str
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None
    email: str | None = None
    email_verified: bool = False
    phone_number: str | None = None
    phone_number_verified: bool = False
    updated_at: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    @classmethod
    def from_row(cls, row: User) -> 'UserRecord':
        return cls(
            id=row.id,
            username=row.username,
            status=row.status,
            name=row.name,
            given_name=row.given_name,
            family_name=row.family_name,
            picture=row.picture,
            email=row.email,
            email_verified=bool(row.email_verified),
            phone_number=row.phone_number,
            phone_number_verified=bool(row.phone_number_verified),
            updated_at=row.updated_at or 0,
        )


class UserStore:
    def __init__(self, db, clock: Clock):
        self.db = db
        self.clock = clock

    def authenticate(self, username: str | None, password: str | None):
        """``Ok(UserRecord)`` or ``Err(reason)``.

        The reason (``unknown_user``, ``bad_password``, ``locked``,
        ``inactive``) is for the audit trail only; the browser always sees the
        same message.
        """
        if not username or not password:
            return Err('missing_credentials')
        with self.db.session() as s:
            row = s.query(User).filter_by(username=username).first()
            if row is None:
                check_password_hash(_DUMMY_HASH, password)
                return Err('unknown_user')
            if not check_password_hash(row.password_hash, password):
                return Err('bad_password')
            user = UserRecord.from_row(row)
        if not user.is_active:
            return Err(user.status)
        return Ok(user)

    def get(self, user_id) -> UserRecord | None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        with self.db.session() as s:
            row = s.get(User, user_id)
            return UserRecord.from_row(row) if row else None

    def get_active(self, user_id) -> UserRecord | None:
        user = self.get(user_id)
        return user if user and user.is_active else None

    def get_by_username(self, username: str) -> UserRecord | None:
        with self.db.session() as s:
            row = s.query(User).filter_by(username=username).first()
            return UserRecord.from_row(row) if row else None

    def create(self, username: str, password: str, **profile) -> UserRecord:
        status = profile.pop('status', 'active')
        if status not in USER_STATUSES:
            raise ValueError(f'unknown user status: {status}')
        row = User(username=username, password_hash=generate_password_hash(password),
                   status=status, updated_at=now_int(self.clock), **profile)
        with self.db.session() as s:
            s.add(row)
            s.flush()
            user = UserRecord.from_row(row)
        log.info('created user %s', username)
        return user

    def set_status(self, username: str, status: str) -> UserRecord:
        if status not in USER_STATUSES:
            raise ValueError(f'unknown user status: {status}')
        with self.db.session() as s:
            row = s.query(User).filter_by(username=username).first()
            if row is None:
                raise LookupError(username)
            row.status = status
            row.updated_at = now_int(self.clock)
            s.flush()
            user = UserRecord.from_row(row)
        log.info('user %s is now %s', username, status)
        return user
