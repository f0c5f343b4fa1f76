"""Token revocation (RFC 7009) and introspection (RFC 7662)."""
from __future__ import annotations

import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from .clients import ClientRegistry
from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError
from .models import RefreshTokenRecord
from .revocation import blacklist, is_revoked, revoke_family
from .tokens import TokenCodec, TYP_ACCESS, TYP_REFRESH

log = logging.getLogger('authserver.introspection')

INACTIVE = {'active': False}


class TokenAdministration:
    def __init__(self, db, registry: ClientRegistry, codec: TokenCodec, users, clock: Clock,
                 access_token_ttl: int = 3600):
        self.db = db
        self.registry = registry
        self.codec = codec
        self.users = users
        self.clock = clock
        self.access_token_ttl = access_token_ttl

    def _authenticated(self, form, headers):
        authenticated = self.registry.authenticate_request(form, headers)
        if not authenticated.ok:
            return authenticated
        if not form.get('token'):
            return Err(OAuthError.invalid_request('Missing token'))
        return authenticated

    def _claims(self, token: str) -> dict | None:
        verified = self.codec.verify(token)
        if not verified.ok or verified.value.get('typ') not in (TYP_ACCESS, TYP_REFRESH):
            return None
        return verified.value

    def revoke(self, form: Mapping[str, str], headers: Mapping[str, str]):
        """``Ok(None)`` whenever the caller is authenticated, even for unknown tokens."""
        authenticated = self._authenticated(form, headers)
        if not authenticated.ok:
            return authenticated
        client = authenticated.value
        claims = self._claims(form['token'])
        if claims is None or claims.get('client_id') != client.client_id:
            return Ok(None)
        now = now_int(self.clock)
        try:
            if claims['typ'] == TYP_REFRESH:
                with self.db.session() as s:
                    row = s.query(RefreshTokenRecord).filter_by(jti=claims['jti']).first()
                    if row is not None:
                        until = now + max(client.access_token_ttl or 0, self.access_token_ttl)
                        revoke_family(s, row.family_id, now, until)
            else:
                blacklist(self.db, claims['jti'], TYP_ACCESS, claims['exp'], now)
        except SQLAlchemyError:
            log.exception('revocation failed for client %s', client.client_id)
            return Err(OAuthError.server_error())
        log.info('client %s revoked a %s token', client.client_id, claims['typ'])
        return Ok(None)

    def introspect(self, form: Mapping[str, str], headers: Mapping[str, str]):
        """``Ok(response dict)``; anything not currently usable is ``{"active": false}``."""
        authenticated = self._authenticated(form, headers)
        if not authenticated.ok:
            return authenticated
        client = authenticated.value
        claims = self._claims(form['token'])
        if claims is None or claims.get('client_id') != client.client_id:
            return Ok(dict(INACTIVE))
        now = now_int(self.clock)
        try:
            with self.db.session() as s:
                if is_revoked(s, claims, now):
                    return Ok(dict(INACTIVE))
                scope = claims.get('scope')
                if claims['typ'] == TYP_REFRESH:
                    row = s.query(RefreshTokenRecord).filter_by(jti=claims['jti']).first()
                    if row is None or row.revoked or now >= row.expires_at:
                        return Ok(dict(INACTIVE))
                    scope = row.scope
        except SQLAlchemyError:
            log.exception('introspection failed for client %s', client.client_id)
            return Err(OAuthError.server_error())

        response: dict[str, Any] = {
            'active': True,
            'client_id': claims['client_id'],
            'token_type': 'Bearer' if claims['typ'] == TYP_ACCESS else 'refresh_token',
            'scope': scope or '',
            'sub': claims.get('sub'),
            'iss': claims['iss'],
            'iat': claims['iat'],
            'exp': claims['exp'],
            'jti': claims['jti'],
        }
        if claims.get('gty') != 'client_credentials':
            user = self.users.get_active(claims.get('sub'))
            if user is None:
                return Ok(dict(INACTIVE))
            response['username'] = user.username
        return Ok(response)
