"""
Client Registry
---------------
Resolves a ``client_id`` to an immutable client snapshot and answers the
questions the authorization and token endpoints ask about it.

Clients are a tagged variant: ``PublicClient`` (no secret, PKCE always
required) or ``ConfidentialClient`` (secret hash, PKCE still required on the
authorization code grant). Behavior that differs between the two dispatches
on the type, not on flags.

Lookups are served from a small in-process cache with a TTL; administrative
writes go through this class and invalidate the cached entry.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Mapping, Union

from authlib.oauth2.rfc6749.util import extract_basic_authorization, scope_to_list, list_to_scope
from werkzeug.security import check_password_hash, generate_password_hash, gen_salt

from .clock import Clock, now_int
from .errors import Ok, Err, OAuthError
from .models import OAuth2Client

log = logging.getLogger('authserver.clients')

GRANT_TYPES = ('authorization_code', 'refresh_token', 'client_credentials')
CONSENT_POLICIES = ('always', 'once', 'skip')


@dataclass(frozen=True, kw_only=True)
class _BaseClient:
    client_id: str
    client_name: str
    redirect_uris: tuple[str, ...]
    allowed_scopes: frozenset[str]
    allowed_grant_types: frozenset[str]
    consent_policy: str = 'always'
    access_token_ttl: int | None = None
    refresh_token_ttl: int | None = None
    status: str = 'active'

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    @property
    def pkce_required(self) -> bool:
        return True


@dataclass(frozen=True, kw_only=True)
class PublicClient(_BaseClient):
    client_type: str = field(default='public', init=False)


@dataclass(frozen=True, kw_only=True)
class ConfidentialClient(_BaseClient):
    client_secret_hash: str = field(repr=False)
    client_type: str = field(default='confidential', init=False)


Client = Union[PublicClient, ConfidentialClient]


def _snapshot(row: OAuth2Client) -> Client:
    common = dict(
        client_id=row.client_id,
        client_name=row.client_name or row.client_id,
        redirect_uris=tuple(row.redirect_uri_list),
        allowed_scopes=frozenset(row.scope_list),
        allowed_grant_types=frozenset(row.grant_type_list),
        consent_policy=row.consent_policy or 'always',
        access_token_ttl=row.access_token_ttl,
        refresh_token_ttl=row.refresh_token_ttl,
        status=row.status,
    )
    if row.client_type == 'confidential':
        return ConfidentialClient(client_secret_hash=row.client_secret_hash or '', **common)
    return PublicClient(**common)


def normalize_scope(scopes) -> str:
    """Sorted, de-duplicated, space-delimited scope string."""
    if isinstance(scopes, str):
        scopes = scope_to_list(scopes) or []
    return list_to_scope(sorted(set(scopes))) or ''


class ClientRegistry:
    def __init__(self, db, cache_ttl: int, clock: Clock):
        self.db = db
        self.cache_ttl = cache_ttl
        self.clock = clock
        self._cache: dict[str, tuple[int, Client | None]] = {}
        self._lock = threading.Lock()

    # ----------------------
    # Lookups
    # ----------------------
    def get(self, client_id: str | None) -> Client | None:
        if not client_id:
            return None
        now = now_int(self.clock)
        with self._lock:
            hit = self._cache.get(client_id)
            if hit and hit[0] > now:
                return hit[1]
        with self.db.session() as s:
            row = s.query(OAuth2Client).filter_by(client_id=client_id).first()
            client = _snapshot(row) if row else None
        with self._lock:
            self._cache[client_id] = (now + self.cache_ttl, client)
        return client

    def resolve(self, client_id: str | None):
        """``Ok(Client)`` for a known, active client, else ``Err(invalid_client)``."""
        client = self.get(client_id)
        if client is None:
            return Err(OAuthError.invalid_client('Unknown client'))
        if not client.is_active:
            return Err(OAuthError.invalid_client('Client is inactive'))
        return Ok(client)

    def invalidate(self, client_id: str | None = None) -> None:
        with self._lock:
            if client_id is None:
                self._cache.clear()
            else:
                self._cache.pop(client_id, None)

    # ----------------------
    # Validation
    # ----------------------
    @staticmethod
    def validate_redirect_uri(client: Client, uri: str | None) -> bool:
        # exact string comparison, no normalization or prefix matching
        return bool(uri) and uri in client.redirect_uris

    @staticmethod
    def validate_scopes(client: Client, requested):
        """``Ok(normalized scope list)`` or ``Err(invalid_scope)``."""
        if isinstance(requested, str):
            requested = scope_to_list(requested) or []
        requested = [s for s in (requested or []) if s]
        if not requested:
            return Err(OAuthError.invalid_scope('No scope requested'))
        disallowed = sorted(set(requested) - client.allowed_scopes)
        if disallowed:
            return Err(OAuthError.invalid_scope(f'Scope not allowed for this client: {" ".join(disallowed)}'))
        return Ok(sorted(set(requested)))

    @staticmethod
    def allows_grant(client: Client, grant_type: str) -> bool:
        return grant_type in client.allowed_grant_types

    # ----------------------
    # Client authentication (token, revoke, introspect)
    # ----------------------
    def authenticate_request(self, form: Mapping[str, str], headers: Mapping[str, str]):
        """Authenticate the calling client.

        Confidential clients use client_secret_basic or client_secret_post;
        public clients identify themselves with ``client_id`` alone.
        """
        basic_id, basic_secret = extract_basic_authorization(headers)
        body_id = form.get('client_id')
        body_secret = form.get('client_secret')

        if basic_id is not None:
            if body_id and body_id != basic_id:
                return Err(OAuthError.invalid_request('client_id does not match the Authorization header'))
            if body_secret:
                return Err(OAuthError.invalid_request('Multiple client authentication methods used'))
            client_id, secret, basic = basic_id, basic_secret, True
        else:
            client_id, secret, basic = body_id, body_secret, False

        if not client_id:
            return Err(OAuthError.invalid_client('Client authentication required', basic_attempted=basic))

        client = self.get(client_id)
        if client is None or not client.is_active:
            return Err(OAuthError.invalid_client('Client authentication failed', basic_attempted=basic))

        if isinstance(client, ConfidentialClient):
            if not secret or not client.client_secret_hash \
                    or not check_password_hash(client.client_secret_hash, secret):
                return Err(OAuthError.invalid_client('Client authentication failed', basic_attempted=basic))
        elif secret:
            # a public client has nothing to check a secret against
            return Err(OAuthError.invalid_client('Public clients must not send a secret', basic_attempted=basic))
        return Ok(client)

    # ----------------------
    # Administration
    # ----------------------
    def register(self, client_id: str, client_type: str, redirect_uris, scopes, grant_types=None,
                 client_name: str | None = None, consent_policy: str = 'always', client_secret: str | None = None,
                 access_token_ttl: int | None = None, refresh_token_ttl: int | None = None):
        """Create a client. Returns ``(Client, plaintext_secret_or_None)``."""
        if client_type not in ('public', 'confidential'):
            raise ValueError(f'unknown client type: {client_type}')
        if consent_policy not in CONSENT_POLICIES:
            raise ValueError(f'unknown consent policy: {consent_policy}')
        grant_types = list(grant_types or ['authorization_code', 'refresh_token'])
        unknown = set(grant_types) - set(GRANT_TYPES)
        if unknown:
            raise ValueError(f'unknown grant types: {" ".join(sorted(unknown))}')
        if client_type == 'public' and 'client_credentials' in grant_types:
            raise ValueError('public clients cannot use client_credentials')
        if isinstance(redirect_uris, str):
            redirect_uris = redirect_uris.split()

        secret_hash = None
        if client_type == 'confidential':
            client_secret = client_secret or gen_salt(48)
            secret_hash = generate_password_hash(client_secret)
        else:
            client_secret = None

        row = OAuth2Client(
            client_id=client_id,
            client_type=client_type,
            client_secret_hash=secret_hash,
            client_name=client_name or client_id,
            redirect_uris=' '.join(redirect_uris),
            scope=normalize_scope(scopes),
            grant_types=' '.join(grant_types),
            consent_policy=consent_policy,
            access_token_ttl=access_token_ttl,
            refresh_token_ttl=refresh_token_ttl,
            status='active',
            created_at=now_int(self.clock),
        )
        with self.db.session() as s:
            s.add(row)
            s.flush()
            client = _snapshot(row)
        self.invalidate(client_id)
        log.info('registered %s client %s', client_type, client_id)
        return client, client_secret

    def update(self, client_id: str, **changes) -> Client:
        allowed = {'client_name', 'redirect_uris', 'scope', 'grant_types', 'consent_policy',
                   'access_token_ttl', 'refresh_token_ttl', 'status'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f'cannot update: {", ".join(sorted(unknown))}')
        for key in ('redirect_uris', 'grant_types'):
            if isinstance(changes.get(key), (list, tuple)):
                changes[key] = ' '.join(changes[key])
        if 'scope' in changes:
            changes['scope'] = normalize_scope(changes['scope'])
        with self.db.session() as s:
            row = s.query(OAuth2Client).filter_by(client_id=client_id).first()
            if row is None:
                raise LookupError(client_id)
            for key, value in changes.items():
                setattr(row, key, value)
            s.flush()
            client = _snapshot(row)
        self.invalidate(client_id)
        return client

    def deactivate(self, client_id: str) -> Client:
        # soft delete, live grants still reference the row
        return self.update(client_id, status='inactive')
