"""
Authorization State Machine
---------------------------
Drives one authorization attempt:

    Received -> ClientValidated -> UserAuthenticated -> ConsentDecided -> CodeIssued
                                   (any stage) -> Rejected

Each stage is a function returning ``Ok(context)`` or ``Err(Rejection)``; the
first failure wins. A ``Rejection`` without a redirect target is rendered as
an error page: until the client and its redirect URI are validated there is
nowhere safe to send the browser.

Progress is persisted on an ``authorization_request`` row keyed by
(client_id, state). Status changes are conditional updates, so a replayed or
double-submitted request can never mint a second code.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from . import pkce
from .clients import Client, ClientRegistry, normalize_scope
from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError
from .models import AuthorizationRequest, OAuth2AuthorizationCode, RememberedConsent
from .tokens import TokenCodec, TYP_CODE, new_jti

log = logging.getLogger('authserver.authorize')

MAX_STATE_LENGTH = 500
MAX_NONCE_LENGTH = 256


# ----------------------
# Outcomes
# ----------------------
def add_query(uri: str, params: dict) -> str:
    parts = urlsplit(uri)
    query = parts.query + ('&' if parts.query else '') + urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


@dataclass(frozen=True)
class Rejection:
    error: OAuthError
    redirect_uri: str | None = None  # None: render an error page, never redirect
    state: str | None = None

    @property
    def redirect_url(self) -> str | None:
        if not self.redirect_uri:
            return None
        params = self.error.to_payload()
        if self.state is not None:
            params['state'] = self.state
        return add_query(self.redirect_uri, params)


@dataclass(frozen=True)
class AuthorizationQuery:
    client_id: str
    redirect_uri: str
    scope: str
    state: str
    code_challenge: str
    code_challenge_method: str
    nonce: str | None = None


@dataclass(frozen=True)
class LoginRequired:
    client: Client
    query: AuthorizationQuery


@dataclass(frozen=True)
class ConsentRequired:
    request_id: str
    client: Client
    scopes: tuple[str, ...]
    state: str


@dataclass(frozen=True)
class CodeIssued:
    code: str
    redirect_uri: str
    state: str
    client_id: str
    user_id: int
    scope: str

    @property
    def redirect_url(self) -> str:
        return add_query(self.redirect_uri, {'code': self.code, 'state': self.state})


# ----------------------
# Received
# ----------------------
def parse_request(params: Mapping[str, str]):
    """Syntax checks only. Failures here are always rendered as a page."""
    def page(error):
        return Err(Rejection(error))

    response_type = params.get('response_type')
    if not response_type:
        return page(OAuthError.invalid_request('Missing response_type'))
    if response_type != 'code':
        return page(OAuthError.unsupported_response_type())
    for name in ('client_id', 'redirect_uri', 'state', 'code_challenge'):
        if not params.get(name):
            return page(OAuthError.invalid_request(f'Missing {name}'))
    method = params.get('code_challenge_method')
    if method != pkce.S256:
        return page(OAuthError.invalid_request('code_challenge_method must be S256'))
    if not pkce.is_valid_challenge(params['code_challenge']):
        return page(OAuthError.invalid_request('Malformed code_challenge'))
    if len(params['state']) > MAX_STATE_LENGTH:
        return page(OAuthError.invalid_request('state is too long'))
    nonce = params.get('nonce') or None
    if nonce is not None and len(nonce) > MAX_NONCE_LENGTH:
        return page(OAuthError.invalid_request('nonce is too long'))
    return Ok(AuthorizationQuery(
        client_id=params['client_id'],
        redirect_uri=params['redirect_uri'],
        scope=params.get('scope') or '',
        state=params['state'],
        code_challenge=params['code_challenge'],
        code_challenge_method=method,
        nonce=nonce,
    ))


class AuthorizationEngine:
    def __init__(self, db, registry: ClientRegistry, codec: TokenCodec, users, clock: Clock,
                 code_ttl: int = 600, auditor=None):
        self.db = db
        self.registry = registry
        self.codec = codec
        self.users = users
        self.clock = clock
        self.code_ttl = code_ttl
        self.auditor = auditor

    # ----------------------
    # ClientValidated
    # ----------------------
    def validate_client(self, query: AuthorizationQuery):
        resolved = self.registry.resolve(query.client_id)
        if not resolved.ok:
            return Err(Rejection(resolved.error))
        client = resolved.value
        if not self.registry.validate_redirect_uri(client, query.redirect_uri):
            return Err(Rejection(OAuthError.invalid_request('redirect_uri is not registered for this client')))
        if not self.registry.allows_grant(client, 'authorization_code'):
            return Err(Rejection(OAuthError.unauthorized_client()))
        return Ok(client)

    def validate_scope(self, client: Client, query: AuthorizationQuery):
        checked = self.registry.validate_scopes(client, query.scope)
        if not checked.ok:
            return Err(Rejection(checked.error, query.redirect_uri, query.state))
        return Ok(tuple(checked.value))

    def validate(self, params: Mapping[str, str]):
        """Run Received and ClientValidated. ``Ok((query, client, scopes))`` or ``Err(Rejection)``."""
        parsed = parse_request(params)
        if not parsed.ok:
            return parsed
        query = parsed.value
        checked = self.validate_client(query)
        if not checked.ok:
            return checked
        client = checked.value
        scoped = self.validate_scope(client, query)
        if not scoped.ok:
            return scoped
        return Ok((query, client, scoped.value))

    # ----------------------
    # Entry points
    # ----------------------
    def begin(self, params: Mapping[str, str], user_id: int | None):
        """Advance a fresh or resumed authorization request as far as it can go.

        Returns ``Ok(LoginRequired | ConsentRequired | CodeIssued)`` or
        ``Err(Rejection)``.
        """
        try:
            validated = self.validate(params)
        except SQLAlchemyError:
            log.exception('client lookup failed')
            return Err(Rejection(OAuthError.server_error()))
        if not validated.ok:
            return validated
        query, client, scopes = validated.value

        try:
            # UserAuthenticated
            user = self.users.get_active(user_id) if user_id is not None else None
            if user is None:
                return Ok(LoginRequired(client, query))

            opened = self._open_request(query, client, user.id, scopes)
            if not opened.ok:
                return opened
            request_id, status = opened.value

            if status == 'consented' or self._consent_satisfied(client, user.id, scopes):
                return self._consent_and_issue(request_id, user.id, client)
        except SQLAlchemyError:
            log.exception('authorization request failed for client %s', client.client_id)
            return Err(Rejection(OAuthError.server_error(), query.redirect_uri, query.state))
        return Ok(ConsentRequired(request_id, client, scopes, query.state))

    def decide(self, request_id: str, user_id: int | None, allow: bool):
        """ConsentDecided: record the user's answer and, on allow, issue the code."""
        try:
            with self.db.session() as s:
                row = s.query(AuthorizationRequest).filter_by(request_id=request_id).first()
            if row is None or user_id is None or row.user_id != user_id:
                return Err(Rejection(OAuthError.invalid_request('Unknown authorization request')))
            if now_int(self.clock) >= row.expires_at:
                return Err(Rejection(OAuthError.invalid_request('Authorization request expired'),
                                     row.redirect_uri, row.state))
            resolved = self.registry.resolve(row.client_id)
            if not resolved.ok:
                return Err(Rejection(resolved.error))
            client = resolved.value

            # UserAuthenticated again: the user may have been locked since the consent page
            if self.users.get_active(user_id) is None:
                self._transition(request_id, 'pending', 'denied')
                if self.auditor:
                    self.auditor.record('authorize_denied', 'failure', actor=str(user_id),
                                        resource=client.client_id, reason='user_inactive')
                return Err(Rejection(OAuthError.access_denied('The user account is not active'),
                                     row.redirect_uri, row.state))

            if not allow:
                if not self._transition(request_id, 'pending', 'denied'):
                    return Err(self._replayed(row))
                if self.auditor:
                    self.auditor.record('authorize_denied', 'failure', actor=str(user_id),
                                        resource=client.client_id)
                return Err(Rejection(OAuthError.access_denied(), row.redirect_uri, row.state))
            return self._consent_and_issue(request_id, user_id, client)
        except SQLAlchemyError:
            log.exception('consent decision failed for request %s', request_id)
            return Err(Rejection(OAuthError.server_error()))

    # ----------------------
    # Persistence
    # ----------------------
    def _open_request(self, query: AuthorizationQuery, client: Client, user_id: int, scopes):
        now = now_int(self.clock)
        scope = normalize_scope(scopes)
        replayed = None
        try:
            with self.db.session() as s:
                row = s.query(AuthorizationRequest) \
                    .filter_by(client_id=client.client_id, state=query.state).first()
                if row is not None and now >= row.expires_at:
                    s.delete(row)
                    s.flush()
                    row = None
                if row is not None and row.status in ('completed', 'denied'):
                    replayed = row
                elif row is not None:
                    same = (row.user_id == user_id and row.redirect_uri == query.redirect_uri
                            and row.scope == scope and row.code_challenge == query.code_challenge)
                    if not same:
                        return Err(Rejection(OAuthError.invalid_request('state is already in use'),
                                             query.redirect_uri, query.state))
                    return Ok((row.request_id, row.status))
                else:
                    row = AuthorizationRequest(
                        request_id=secrets.token_urlsafe(24),
                        client_id=client.client_id,
                        state=query.state,
                        redirect_uri=query.redirect_uri,
                        scope=scope,
                        code_challenge=query.code_challenge,
                        code_challenge_method=query.code_challenge_method,
                        nonce=query.nonce,
                        user_id=user_id,
                        status='pending',
                        created_at=now,
                        expires_at=now + self.code_ttl,
                    )
                    s.add(row)
                    s.flush()
                    opened = (row.request_id, row.status)
        except IntegrityError:
            # a concurrent request with the same state got there first
            return Err(Rejection(OAuthError.invalid_request('state is already in use'),
                                 query.redirect_uri, query.state))
        if replayed is not None:
            return Err(self._replayed(replayed))
        return Ok(opened)

    def _transition(self, request_id: str, old: str, new: str) -> bool:
        with self.db.session() as s:
            changed = s.query(AuthorizationRequest) \
                .filter_by(request_id=request_id, status=old) \
                .update({'status': new}, synchronize_session=False)
        return changed == 1

    def _replayed(self, row: AuthorizationRequest) -> Rejection:
        log.warning('replayed authorization request client=%s state=%s', row.client_id, row.state)
        if self.auditor:
            self.auditor.record('authorize_replay', 'failure', actor=str(row.user_id), resource=row.client_id)
        return Rejection(OAuthError.invalid_request('Authorization request has already been processed'),
                         row.redirect_uri, row.state)

    def _consent_satisfied(self, client: Client, user_id: int, scopes) -> bool:
        if client.consent_policy == 'skip':
            return True
        if client.consent_policy != 'once':
            return False
        with self.db.session() as s:
            remembered = s.query(RememberedConsent).filter_by(user_id=user_id, client_id=client.client_id).first()
            granted = set((remembered.scope if remembered else '').split())
        return bool(granted) and set(scopes) <= granted

    def _remember(self, s, client: Client, user_id: int, scope: str) -> None:
        row = s.query(RememberedConsent).filter_by(user_id=user_id, client_id=client.client_id).first()
        if row is None:
            s.add(RememberedConsent(user_id=user_id, client_id=client.client_id, scope=scope,
                                    created_at=now_int(self.clock)))
        else:
            row.scope = normalize_scope(set(row.scope.split()) | set(scope.split()))

    def _consent_and_issue(self, request_id: str, user_id: int, client: Client):
        # pending -> consented is a no-op if it is already consented
        self._transition(request_id, 'pending', 'consented')
        return self._issue_code(request_id, user_id, client)

    # ----------------------
    # CodeIssued
    # ----------------------
    def _issue_code(self, request_id: str, user_id: int, client: Client):
        now = now_int(self.clock)
        jti = new_jti()
        with self.db.session() as s:
            changed = s.query(AuthorizationRequest) \
                .filter_by(request_id=request_id, status='consented') \
                .update({'status': 'completed'}, synchronize_session=False)
            row = s.query(AuthorizationRequest).filter_by(request_id=request_id).first()
            if changed != 1:
                issued = None
            else:
                issued = self._mint(s, row, user_id, client, now, jti)
        if issued is None:
            return Err(self._replayed(row))
        log.info('issued authorization code to %s for user %s', client.client_id, user_id)
        return Ok(issued)

    def _mint(self, s, row: AuthorizationRequest, user_id: int, client: Client, now: int, jti: str) -> CodeIssued:
        code = self.codec.issue({
            'typ': TYP_CODE,
            'sub': str(user_id),
            'client_id': row.client_id,
            'scope': row.scope,
            'jti': jti,
        }, self.code_ttl)
        s.add(OAuth2AuthorizationCode(
            jti=jti,
            client_id=row.client_id,
            user_id=user_id,
            redirect_uri=row.redirect_uri,
            scope=row.scope,
            code_challenge=row.code_challenge,
            code_challenge_method=row.code_challenge_method,
            nonce=row.nonce,
            issued_at=now,
            expires_at=now + self.code_ttl,
            consumed=False,
        ))
        if client.consent_policy == 'once':
            self._remember(s, client, user_id, row.scope)
        return CodeIssued(code=code, redirect_uri=row.redirect_uri, state=row.state,
                          client_id=row.client_id, user_id=user_id, scope=row.scope)
