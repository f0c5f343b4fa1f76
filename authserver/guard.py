"""
Resource Guard
--------------
Bearer authentication for protected endpoints. A request passes only if the
token verifies, is an access token, has not been revoked, its subject (user
or client) is still active, and it carries the required scope.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from flask import current_app, g, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .clients import ClientRegistry
from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError, TokenError
from .revocation import is_revoked
from .tokens import TokenCodec, TYP_ACCESS
from .users import UserRecord

log = logging.getLogger('authserver.guard')


@dataclass(frozen=True)
class Principal:
    subject: str
    client_id: str
    scopes: frozenset[str]
    user: UserRecord | None = None
    claims: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_client(self) -> bool:
        return self.user is None


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(None, 1)
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None
    return parts[1].strip() or None


class ResourceGuard:
    def __init__(self, db, codec: TokenCodec, users, registry: ClientRegistry, clock: Clock):
        self.db = db
        self.codec = codec
        self.users = users
        self.registry = registry
        self.clock = clock

    def authenticate(self, authorization: str | None, required_scope: str | None = None):
        token = bearer_token(authorization)
        if token is None:
            return Err(OAuthError.invalid_token('Missing bearer token'))

        verified = self.codec.verify(token, expected_type=TYP_ACCESS)
        if not verified.ok:
            if verified.error is TokenError.EXPIRED:
                return Err(OAuthError.invalid_token('The access token expired'))
            return Err(OAuthError.invalid_token())
        claims = verified.value

        try:
            return self._check_subject(claims, required_scope)
        except SQLAlchemyError:
            log.exception('bearer token check failed')
            return Err(OAuthError.server_error())

    def _check_subject(self, claims: dict, required_scope: str | None):
        with self.db.session() as s:
            revoked = is_revoked(s, claims, now_int(self.clock))
        if revoked:
            return Err(OAuthError.invalid_token('The access token has been revoked'))

        client = self.registry.get(claims.get('client_id'))
        if client is None or not client.is_active:
            return Err(OAuthError.invalid_token('The client is no longer active'))

        user = None
        if claims.get('gty') == 'client_credentials':
            if claims.get('sub') != client.client_id:
                return Err(OAuthError.invalid_token())
        else:
            # catches users locked or deactivated after the token was issued
            user = self.users.get_active(claims.get('sub'))
            if user is None:
                return Err(OAuthError.invalid_token('The resource owner is not active'))

        scopes = frozenset((claims.get('scope') or '').split())
        if required_scope and required_scope not in scopes:
            return Err(OAuthError.insufficient_scope(required_scope))
        return Ok(Principal(subject=str(claims['sub']), client_id=client.client_id, scopes=scopes,
                            user=user, claims=claims))


def error_response(error: OAuthError):
    resp = jsonify(error.to_payload())
    resp.status_code = error.status_code
    for k, v in error.headers.items():
        resp.headers[k] = v
    resp.headers['Cache-Control'] = 'no-store'
    resp.headers['Pragma'] = 'no-cache'
    return resp


def require_bearer(scope: str | None = None):
    """Route decorator; the authenticated ``Principal`` is put on ``g.principal``."""
    def wrapper(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            ext = current_app.extensions['authserver']
            result = ext.guard.authenticate(request.headers.get('Authorization'), scope)
            if not result.ok:
                ext.auditor.record('resource_access', 'failure', resource=request.path,
                                   ip_address=request.remote_addr, error=result.error.error,
                                   reason=result.error.description)
                return error_response(result.error)
            g.principal = result.value
            return f(*args, **kwargs)
        return decorated
    return wrapper
