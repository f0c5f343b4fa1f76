"""
Result values and the OAuth error taxonomy.

Validation stages return ``Ok(value)`` or ``Err(error)`` instead of raising;
only the HTTP layer turns an ``OAuthError`` into a response.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

from authlib.oauth2.rfc6750.errors import InsufficientScopeError, InvalidTokenError

T = TypeVar('T')
E = TypeVar('E')


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


class TokenError(enum.Enum):
    EXPIRED = 'expired'
    MALFORMED = 'malformed'
    BAD_SIGNATURE = 'bad_signature'


@dataclass(frozen=True)
class OAuthError:
    error: str
    description: str = ''
    status_code: int = 400
    headers: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        data = {'error': self.error}
        if self.description:
            data['error_description'] = self.description
        return data

    # ----------------------
    # Taxonomy
    # ----------------------
    @classmethod
    def invalid_request(cls, description='Invalid request'):
        return cls('invalid_request', description, 400)

    @classmethod
    def invalid_client(cls, description='Client authentication failed', basic_attempted=False):
        headers = {'WWW-Authenticate': 'Basic realm="token"'} if basic_attempted else {}
        return cls('invalid_client', description, 401, headers)

    @classmethod
    def invalid_grant(cls, description='Invalid grant'):
        return cls('invalid_grant', description, 400)

    @classmethod
    def invalid_scope(cls, description='Requested scope is not allowed'):
        return cls('invalid_scope', description, 400)

    @classmethod
    def unauthorized_client(cls, description='Client is not allowed to use this grant type'):
        return cls('unauthorized_client', description, 400)

    @classmethod
    def unsupported_grant_type(cls, description='Unsupported grant_type'):
        return cls('unsupported_grant_type', description, 400)

    @classmethod
    def unsupported_response_type(cls, description='Only response_type=code is supported'):
        return cls('unsupported_response_type', description, 400)

    @classmethod
    def access_denied(cls, description='The resource owner denied the request'):
        return cls('access_denied', description, 400)

    @classmethod
    def from_authlib(cls, exc) -> 'OAuthError':
        """Adopt an Authlib ``OAuth2Error``, keeping only its challenge header."""
        headers = {k: v for k, v in exc.get_headers() if k == 'WWW-Authenticate'}
        return cls(exc.error, exc.get_error_description() or '', exc.status_code, headers)

    @classmethod
    def invalid_token(cls, description='The access token is invalid'):
        return cls.from_authlib(InvalidTokenError(description))

    @classmethod
    def insufficient_scope(cls, scope: str):
        return cls.from_authlib(ScopeChallenge(scope))

    @classmethod
    def too_many_attempts(cls, retry_after: int):
        retry_after = max(1, int(retry_after))
        return cls('too_many_attempts', 'Too many failed attempts, try again later', 429,
                   {'Retry-After': str(retry_after)})

    @classmethod
    def server_error(cls):
        return cls('server_error', 'The server encountered an unexpected condition', 500)


class ScopeChallenge(InsufficientScopeError):
    """``insufficient_scope`` with the RFC 6750 challenge naming the missing scope."""

    def __init__(self, scope: str):
        super().__init__(f'The {scope} scope is required')
        self.scope = scope

    def get_headers(self):
        headers = super().get_headers()
        headers.append(('WWW-Authenticate',
                        f'Bearer error="{self.error}", error_description="{self.get_error_description()}", '
                        f'scope="{self.scope}"'))
        return headers
