"""PKCE (RFC 7636) helpers. Only the S256 method is accepted."""
from __future__ import annotations

import hmac
import re
import secrets

from authlib.oauth2.rfc7636 import create_s256_code_challenge

S256 = 'S256'
SUPPORTED_METHODS = (S256,)

# unreserved characters, 43-128 long; a S256 challenge is always 43
VERIFIER_PATTERN = re.compile(r'^[A-Za-z0-9\-._~]{43,128}$')
CHALLENGE_PATTERN = VERIFIER_PATTERN


def generate_verifier(length: int = 64) -> str:
    if not 43 <= length <= 128:
        raise ValueError('code_verifier length must be between 43 and 128')
    # token_urlsafe yields ~1.3 chars per byte
    return secrets.token_urlsafe(length)[:length]


def derive_challenge(verifier: str) -> str:
    return create_s256_code_challenge(verifier)


def is_valid_verifier(verifier: str | None) -> bool:
    return bool(verifier) and VERIFIER_PATTERN.match(verifier) is not None


def is_valid_challenge(challenge: str | None) -> bool:
    return bool(challenge) and CHALLENGE_PATTERN.match(challenge) is not None


def verify(verifier: str | None, stored_challenge: str | None, method: str | None) -> bool:
    """True only when ``verifier`` hashes (S256) to ``stored_challenge``."""
    if method != S256:
        return False
    if not stored_challenge or not is_valid_verifier(verifier):
        return False
    return hmac.compare_digest(derive_challenge(verifier), stored_challenge)
