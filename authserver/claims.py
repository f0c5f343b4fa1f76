from __future__ import annotations

from typing import Any, Iterable

from .users import UserRecord

# scope -> claims it releases at the UserInfo endpoint
SCOPE_CLAIMS = {
    'profile': ('name', 'given_name', 'family_name', 'preferred_username', 'picture', 'updated_at'),
    'email': ('email', 'email_verified'),
    'phone': ('phone_number', 'phone_number_verified'),
}

SCOPE_DESCRIPTIONS = {
    'openid': 'Sign you in with your account',
    'profile': 'View your basic profile (name, picture)',
    'email': 'View your email address',
    'phone': 'View your phone number',
    'offline_access': 'Stay signed in (issue refresh tokens)',
}


def _claim_value(user: UserRecord, claim: str) -> Any:
    if claim == 'preferred_username':
        return user.username
    if claim == 'name':
        if user.name:
            return user.name
        full = ' '.join(p for p in (user.given_name, user.family_name) if p)
        return full or user.username
    return getattr(user, claim, None)


def build_userinfo(user: UserRecord, scopes: Iterable[str]) -> dict[str, Any]:
    """UserInfo response body. ``sub`` is always present; other claims follow the granted scopes.

    A claim group whose primary value is not stored (no email, no phone) is
    left out entirely rather than sent as null.
    """
    scopes = set(scopes)
    info: dict[str, Any] = {'sub': str(user.id)}
    for scope, names in SCOPE_CLAIMS.items():
        if scope not in scopes:
            continue
        if scope == 'email' and not user.email:
            continue
        if scope == 'phone' and not user.phone_number:
            continue
        for name in names:
            value = _claim_value(user, name)
            if value is None or value == '':
                continue
            info[name] = value
    return info
