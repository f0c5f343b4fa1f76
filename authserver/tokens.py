"""
Token Codec
-----------
Signed, time-bound JWTs for access tokens, refresh tokens, authorization
codes and OpenID Connect ID tokens.

- RS256 only; signing keys live in the ``signing_key`` table and are loaded
  once into a ``KeyRing``. The active key signs, every known key verifies,
  so tokens minted before a rotation stay valid until they expire.
- Claims are minimal: subject id, client id, scope, token type and
  bookkeeping (``iss``, ``iat``, ``exp``, ``jti``). No profile data.
- ``verify`` never raises for bad input; it returns ``Err(TokenError)``.
"""
from __future__ import annotations

import json
import logging
import secrets
import threading
from typing import Any

from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose.errors import BadSignatureError, JoseError
from authlib.oidc.core.util import create_half_hash

from .clock import Clock, now_int
from .errors import Ok, Err, TokenError
from .models import SigningKey

log = logging.getLogger('authserver.tokens')

ALG = 'RS256'

TYP_ACCESS = 'access'
TYP_REFRESH = 'refresh'
TYP_CODE = 'code'
TYP_ID = 'id'

# registered claims the codec owns; callers cannot override them
_RESERVED = ('iss', 'iat', 'exp', 'jti')


class _UnknownKey(Exception):
    pass


def new_jti() -> str:
    return secrets.token_urlsafe(24)


# ----------------------
# Key material
# ----------------------
def _generate_key(kid: str):
    return JsonWebKey.generate_key('RSA', 2048, options={'kid': kid}, is_private=True)


class KeyRing:
    """Signing key plus every verification key, loaded from the database."""

    def __init__(self, db):
        self.db = db
        self._lock = threading.Lock()
        self._active_kid: str | None = None
        self._private = None
        self._public: dict[str, Any] = {}

    @classmethod
    def load(cls, db, default_kid: str = 'dev-1', clock: Clock | None = None) -> 'KeyRing':
        ring = cls(db)
        with db.session() as s:
            if not s.query(SigningKey).filter_by(active=True).first():
                log.info('no active signing key, generating %s', default_kid)
                cls._store_new_key(s, default_kid, now_int(clock) if clock else 0)
        ring.reload()
        return ring

    @staticmethod
    def _store_new_key(s, kid: str, created_at: int) -> SigningKey:
        key = _generate_key(kid)
        pub = key.as_dict(is_private=False, use='sig', alg=ALG)
        priv = key.as_dict(is_private=True)
        pub['kid'] = kid
        priv['kid'] = kid
        item = SigningKey(kid=kid, alg=ALG, public_jwk=json.dumps(pub), private_jwk=json.dumps(priv),
                          active=True, created_at=created_at)
        s.add(item)
        return item

    def reload(self) -> None:
        with self.db.session() as s:
            rows = s.query(SigningKey).order_by(SigningKey.id).all()
            active = [r for r in rows if r.active]
            if not active:
                raise RuntimeError('no active signing key')
            current = active[-1]
            public = {r.kid: JsonWebKey.import_key(json.loads(r.public_jwk)) for r in rows}
            private = JsonWebKey.import_key(json.loads(current.private_jwk))
        with self._lock:
            self._active_kid = current.kid
            self._private = private
            self._public = public

    def rotate(self, new_kid: str | None = None, created_at: int = 0) -> str:
        kid = new_kid or f'key-{secrets.token_hex(4)}'
        with self.db.session() as s:
            s.query(SigningKey).filter_by(active=True).update({'active': False})
            self._store_new_key(s, kid, created_at)
        self.reload()
        log.info('signing key rotated, active kid=%s', kid)
        return kid

    @property
    def active_kid(self) -> str:
        return self._active_kid

    @property
    def signing_key(self):
        return self._private

    def public_key(self, kid: str | None):
        with self._lock:
            if kid is None and len(self._public) == 1:
                return next(iter(self._public.values()))
            return self._public.get(kid)

    def public_jwks(self) -> dict:
        with self._lock:
            keys = list(self._public.values())
        return KeySet(keys).as_dict()


# ----------------------
# Codec
# ----------------------
class TokenCodec:
    def __init__(self, keyring: KeyRing, issuer: str, clock: Clock):
        self.keyring = keyring
        self.issuer = issuer
        self.clock = clock
        self._jwt = JsonWebToken([ALG])

    def issue(self, claims: dict[str, Any], ttl: int) -> str:
        """Sign ``claims`` with the active key; adds iss, iat, exp and jti."""
        now = now_int(self.clock)
        payload = {k: v for k, v in claims.items() if k not in _RESERVED}
        payload.update({
            'iss': self.issuer,
            'iat': now,
            'exp': now + int(ttl),
            'jti': claims.get('jti') or new_jti(),
        })
        header = {'alg': ALG, 'kid': self.keyring.active_kid}
        return self._jwt.encode(header, payload, self.keyring.signing_key).decode('ascii')

    def verify(self, token: str | None, expected_type: str | None = None):
        """Return ``Ok(claims)`` or ``Err(TokenError)``."""
        if not token or not isinstance(token, str):
            return Err(TokenError.MALFORMED)
        try:
            claims = self._decode(token)
        except _UnknownKey:
            # the ring may be stale after a rotation done by another process
            self.keyring.reload()
            try:
                claims = self._decode(token)
            except _UnknownKey:
                return Err(TokenError.BAD_SIGNATURE)
            except BadSignatureError:
                return Err(TokenError.BAD_SIGNATURE)
            except (JoseError, ValueError, TypeError):
                return Err(TokenError.MALFORMED)
        except BadSignatureError:
            return Err(TokenError.BAD_SIGNATURE)
        except (JoseError, ValueError, TypeError):
            return Err(TokenError.MALFORMED)

        exp = claims.get('exp')
        if not isinstance(exp, int) or isinstance(exp, bool):
            return Err(TokenError.MALFORMED)
        if claims.get('iss') != self.issuer or not claims.get('jti'):
            return Err(TokenError.MALFORMED)
        if expected_type is not None and claims.get('typ') != expected_type:
            return Err(TokenError.MALFORMED)
        if now_int(self.clock) >= exp:
            return Err(TokenError.EXPIRED)
        return Ok(claims)

    def _decode(self, token: str) -> dict:
        def load_key(header, payload):
            key = self.keyring.public_key(header.get('kid'))
            if key is None:
                raise _UnknownKey(header.get('kid'))
            return key

        return dict(self._jwt.decode(token, load_key))

    # ----------------------
    # OpenID Connect
    # ----------------------
    def issue_id_token(self, sub: str, client_id: str, access_token: str | None,
                       ttl: int, nonce: str | None = None, auth_time: int | None = None) -> str:
        claims: dict[str, Any] = {'sub': sub, 'aud': client_id, 'typ': TYP_ID}
        if access_token:
            claims['at_hash'] = create_half_hash(access_token, ALG).decode('ascii')
        if nonce:
            claims['nonce'] = nonce
        if auth_time is not None:
            claims['auth_time'] = auth_time
        return self.issue(claims, ttl)
