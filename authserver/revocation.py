from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from .models import RefreshTokenRecord, RevokedToken

log = logging.getLogger('authserver.revocation')


def family_marker(family_id: str) -> str:
    return f'fam:{family_id}'


def revoke_family(s, family_id: str, now: int, until: int) -> int:
    """Revoke every refresh token of a family and blacklist its access tokens.

    ``until`` bounds how long the blacklist entry is kept; it must cover the
    longest-lived access token minted from the family.
    """
    count = s.query(RefreshTokenRecord) \
        .filter(RefreshTokenRecord.family_id == family_id, RefreshTokenRecord.revoked.is_(False)) \
        .update({'revoked': True, 'revoked_at': now}, synchronize_session=False)
    marker = family_marker(family_id)
    if not s.query(RevokedToken.id).filter_by(jti=marker).first():
        s.add(RevokedToken(jti=marker, token_type='family', expires_at=until, revoked_at=now))
    log.warning('revoked refresh token family %s (%d active tokens)', family_id, count)
    return count


def blacklist(db, jti: str, token_type: str, expires_at: int, now: int) -> None:
    try:
        with db.session() as s:
            purge_expired(s, now)
            if not s.query(RevokedToken.id).filter_by(jti=jti).first():
                s.add(RevokedToken(jti=jti, token_type=token_type, expires_at=expires_at, revoked_at=now))
    except IntegrityError:
        # already blacklisted by a concurrent call
        log.debug('token %s already revoked', jti)


def is_revoked(s, claims: dict, now: int) -> bool:
    keys = [claims.get('jti')]
    if claims.get('fam'):
        keys.append(family_marker(claims['fam']))
    return s.query(RevokedToken.id) \
        .filter(RevokedToken.jti.in_([k for k in keys if k]), RevokedToken.expires_at > now) \
        .first() is not None


def purge_expired(s, now: int) -> int:
    return s.query(RevokedToken).filter(RevokedToken.expires_at <= now).delete(synchronize_session=False)
