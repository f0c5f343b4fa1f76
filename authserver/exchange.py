"""
Token Exchange Engine
---------------------
``exchange(form, headers)`` turns a grant into ``Ok(TokenSet)`` or
``Err(OAuthError)``. Supported grants: ``authorization_code`` (with PKCE),
``refresh_token`` (with rotation) and ``client_credentials``.

Single use of authorization codes and refresh tokens is enforced with one
conditional UPDATE each; the database decides the winner when the same
credential is presented concurrently.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from authlib.oauth2.rfc6749.util import scope_to_list
from sqlalchemy.exc import SQLAlchemyError

from . import pkce
from .clients import Client, ClientRegistry, ConfidentialClient, GRANT_TYPES, normalize_scope
from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError, TokenError
from .models import OAuth2AuthorizationCode, RefreshTokenRecord
from .revocation import revoke_family
from .tokens import TokenCodec, TYP_ACCESS, TYP_CODE, TYP_REFRESH, new_jti

log = logging.getLogger('authserver.exchange')

# scopes that only make sense with an end user present
USER_ONLY_SCOPES = frozenset({'openid', 'offline_access'})


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    expires_in: int
    scope: str
    token_type: str = 'Bearer'
    refresh_token: str | None = None
    id_token: str | None = None
    # for the audit trail, never serialized
    subject: str | None = None
    client_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        data = {
            'access_token': self.access_token,
            'token_type': self.token_type,
            'expires_in': self.expires_in,
            'scope': self.scope,
        }
        if self.refresh_token:
            data['refresh_token'] = self.refresh_token
        if self.id_token:
            data['id_token'] = self.id_token
        return data


@dataclass(frozen=True)
class ExchangeSettings:
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 30 * 24 * 3600
    rotate_refresh_tokens: bool = True


class TokenExchangeEngine:
    def __init__(self, db, registry: ClientRegistry, codec: TokenCodec, users, clock: Clock,
                 settings: ExchangeSettings | None = None, auditor=None):
        self.db = db
        self.registry = registry
        self.codec = codec
        self.users = users
        self.clock = clock
        self.settings = settings or ExchangeSettings()
        self.auditor = auditor
        self._grants = {
            'authorization_code': self._authorization_code,
            'refresh_token': self._refresh_token,
            'client_credentials': self._client_credentials,
        }

    def exchange(self, form: Mapping[str, str], headers: Mapping[str, str]):
        grant_type = form.get('grant_type')
        if not grant_type:
            return Err(OAuthError.invalid_request('Missing grant_type'))
        if grant_type not in GRANT_TYPES:
            return Err(OAuthError.unsupported_grant_type())
        try:
            authenticated = self.registry.authenticate_request(form, headers)
            if not authenticated.ok:
                return authenticated
            client = authenticated.value
            if not self.registry.allows_grant(client, grant_type):
                return Err(OAuthError.unauthorized_client())
            return self._grants[grant_type](client, form)
        except SQLAlchemyError:
            # lock timeouts land here too
            log.exception('token exchange failed (grant_type=%s)', grant_type)
            return Err(OAuthError.server_error())

    # ----------------------
    # Helpers
    # ----------------------
    def _access_ttl(self, client: Client) -> int:
        return client.access_token_ttl or self.settings.access_token_ttl

    def _refresh_ttl(self, client: Client) -> int:
        return client.refresh_token_ttl or self.settings.refresh_token_ttl

    def _issue_access(self, client: Client, sub: str, scope: str, family_id: str | None = None,
                      grant: str | None = None) -> str:
        claims = {'typ': TYP_ACCESS, 'sub': sub, 'client_id': client.client_id, 'scope': scope}
        if family_id:
            claims['fam'] = family_id
        if grant:
            claims['gty'] = grant
        return self.codec.issue(claims, self._access_ttl(client))

    def _new_refresh(self, s, client: Client, user_id: int, scope: str, family_id: str, now: int,
                     jti: str | None = None) -> tuple[str, str]:
        jti = jti or new_jti()
        ttl = self._refresh_ttl(client)
        token = self.codec.issue({
            'typ': TYP_REFRESH,
            'sub': str(user_id),
            'client_id': client.client_id,
            'fam': family_id,
            'jti': jti,
        }, ttl)
        s.add(RefreshTokenRecord(jti=jti, family_id=family_id, client_id=client.client_id, user_id=user_id,
                                 scope=scope, issued_at=now, expires_at=now + ttl, revoked=False))
        return jti, token

    @staticmethod
    def _bounded(scope: str, client: Client) -> str:
        # the client's allowed scopes may have shrunk since the grant
        return normalize_scope(set(scope.split()) & client.allowed_scopes)

    def _audit(self, action: str, outcome: str, client: Client, **metadata) -> None:
        if self.auditor:
            self.auditor.record(action, outcome, actor=client.client_id, resource='token', **metadata)

    # ----------------------
    # authorization_code
    # ----------------------
    def _authorization_code(self, client: Client, form: Mapping[str, str]):
        code = form.get('code')
        if not code:
            return Err(OAuthError.invalid_request('Missing code'))
        verified = self.codec.verify(code, expected_type=TYP_CODE)
        if not verified.ok:
            if verified.error is TokenError.EXPIRED:
                return Err(OAuthError.invalid_grant('Authorization code expired'))
            return Err(OAuthError.invalid_grant('Invalid authorization code'))
        claims = verified.value
        now = now_int(self.clock)

        with self.db.session() as s:
            row = s.query(OAuth2AuthorizationCode).filter_by(jti=claims['jti']).first()
        if row is None:
            return Err(OAuthError.invalid_grant('Invalid authorization code'))
        if row.consumed:
            log.warning('authorization code %s presented again by %s', row.jti, client.client_id)
            self._audit('code_replay', 'failure', client, jti=row.jti)
            return Err(OAuthError.invalid_grant('Authorization code already used'))
        if now >= row.expires_at:
            return Err(OAuthError.invalid_grant('Authorization code expired'))
        if row.client_id != client.client_id or claims.get('client_id') != client.client_id:
            return Err(OAuthError.invalid_grant('Authorization code was issued to another client'))
        if form.get('redirect_uri') != row.redirect_uri:
            return Err(OAuthError.invalid_grant('redirect_uri does not match the authorization request'))
        verifier = form.get('code_verifier')
        if not verifier:
            return Err(OAuthError.invalid_grant('Missing code_verifier'))
        if not pkce.verify(verifier, row.code_challenge, row.code_challenge_method):
            return Err(OAuthError.invalid_grant('Invalid code_verifier'))
        user = self.users.get_active(row.user_id)
        if user is None:
            return Err(OAuthError.invalid_grant('Resource owner is not active'))

        scope = self._bounded(row.scope or '', client)
        family_id = new_jti() if self.registry.allows_grant(client, 'refresh_token') else None
        refresh_token = None
        with self.db.session() as s:
            won = s.query(OAuth2AuthorizationCode) \
                .filter_by(jti=row.jti, consumed=False) \
                .update({'consumed': True, 'consumed_at': now}, synchronize_session=False)
            if won == 1 and family_id:
                _, refresh_token = self._new_refresh(s, client, user.id, scope, family_id, now)
        if won != 1:
            log.warning('lost the race to redeem authorization code %s', row.jti)
            return Err(OAuthError.invalid_grant('Authorization code already used'))

        access_token = self._issue_access(client, str(user.id), scope, family_id)
        id_token = None
        if 'openid' in scope.split():
            id_token = self.codec.issue_id_token(str(user.id), client.client_id, access_token,
                                                 self._access_ttl(client), nonce=row.nonce)
        return Ok(TokenSet(access_token=access_token, expires_in=self._access_ttl(client), scope=scope,
                           refresh_token=refresh_token, id_token=id_token,
                           subject=str(user.id), client_id=client.client_id))

    # ----------------------
    # refresh_token
    # ----------------------
    def _refresh_token(self, client: Client, form: Mapping[str, str]):
        presented = form.get('refresh_token')
        if not presented:
            return Err(OAuthError.invalid_request('Missing refresh_token'))
        verified = self.codec.verify(presented, expected_type=TYP_REFRESH)
        if not verified.ok:
            return Err(OAuthError.invalid_grant('Invalid refresh token'))
        claims = verified.value
        if claims.get('client_id') != client.client_id:
            return Err(OAuthError.invalid_grant('Refresh token was issued to another client'))
        now = now_int(self.clock)

        with self.db.session() as s:
            row = s.query(RefreshTokenRecord).filter_by(jti=claims['jti']).first()
        if row is None or row.client_id != client.client_id:
            return Err(OAuthError.invalid_grant('Invalid refresh token'))
        if row.revoked:
            if row.replaced_by and self.settings.rotate_refresh_tokens:
                self._reuse_detected(client, row, now)
            return Err(OAuthError.invalid_grant('Refresh token has been revoked'))
        if now >= row.expires_at:
            return Err(OAuthError.invalid_grant('Refresh token expired'))
        user = self.users.get_active(row.user_id)
        if user is None:
            return Err(OAuthError.invalid_grant('Resource owner is not active'))

        scope = self._bounded(row.scope or '', client)
        requested = form.get('scope')
        if requested:
            wanted = set(scope_to_list(requested) or [])
            if not wanted <= set(scope.split()):
                return Err(OAuthError.invalid_scope('Requested scope exceeds the original grant'))
            scope = normalize_scope(wanted)

        refresh_token = None
        if self.settings.rotate_refresh_tokens:
            successor = new_jti()
            with self.db.session() as s:
                won = s.query(RefreshTokenRecord) \
                    .filter_by(jti=row.jti, revoked=False) \
                    .update({'revoked': True, 'revoked_at': now, 'replaced_by': successor},
                            synchronize_session=False)
                if won == 1:
                    _, refresh_token = self._new_refresh(s, client, user.id, row.scope or '', row.family_id,
                                                         now, jti=successor)
            if won != 1:
                # rotated concurrently by someone else holding the same token
                self._reuse_detected(client, row, now)
                return Err(OAuthError.invalid_grant('Refresh token has been revoked'))

        access_token = self._issue_access(client, str(user.id), scope, row.family_id)
        self._audit('token_refreshed', 'success', client, family=row.family_id)
        return Ok(TokenSet(access_token=access_token, expires_in=self._access_ttl(client), scope=scope,
                           refresh_token=refresh_token, subject=str(user.id), client_id=client.client_id))

    def _reuse_detected(self, client: Client, row: RefreshTokenRecord, now: int) -> None:
        until = now + max(self._access_ttl(client), self.settings.access_token_ttl)
        with self.db.session() as s:
            revoke_family(s, row.family_id, now, until)
        self._audit('refresh_token_reuse', 'failure', client, family=row.family_id, subject=str(row.user_id))

    # ----------------------
    # client_credentials
    # ----------------------
    def _client_credentials(self, client: Client, form: Mapping[str, str]):
        if not isinstance(client, ConfidentialClient):
            return Err(OAuthError.unauthorized_client('Only confidential clients may use client_credentials'))
        requested = form.get('scope')
        if requested:
            checked = self.registry.validate_scopes(client, requested)
            if not checked.ok:
                return checked
            scopes = set(checked.value)
            if scopes & USER_ONLY_SCOPES:
                return Err(OAuthError.invalid_scope('Scope requires an end user'))
        else:
            scopes = set(client.allowed_scopes) - USER_ONLY_SCOPES
        if not scopes:
            return Err(OAuthError.invalid_scope('No scope available for client_credentials'))
        scope = normalize_scope(scopes)
        access_token = self._issue_access(client, client.client_id, scope, grant='client_credentials')
        return Ok(TokenSet(access_token=access_token, expires_in=self._access_ttl(client), scope=scope,
                           subject=client.client_id, client_id=client.client_id))
