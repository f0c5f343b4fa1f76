from __future__ import annotations

from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base

from authlib.oauth2.rfc6749.util import scope_to_list

Base = declarative_base()


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.replace('\n', ' ').split(' ') if v.strip()]


# ----------------------
# Identities
# ----------------------
class User(Base):
    __tablename__ = 'user'
    id = Column(Integer, primary_key=True)
    username = Column(String(40), unique=True, nullable=False)
    password_hash = Column(String(200), nullable=False)
    email = Column(String(120))
    email_verified = Column(Boolean, default=False)
    phone_number = Column(String(40))
    phone_number_verified = Column(Boolean, default=False)
    name = Column(String(120))
    given_name = Column(String(80))
    family_name = Column(String(80))
    picture = Column(String(256))
    status = Column(String(16), nullable=False, default='active')  # active|locked|inactive
    updated_at = Column(Integer, nullable=False, default=0)


class OAuth2Client(Base):
    __tablename__ = 'oauth2_client'
    id = Column(Integer, primary_key=True)
    client_id = Column(String(48), unique=True, nullable=False)
    client_type = Column(String(16), nullable=False, default='public')  # public|confidential
    client_secret_hash = Column(String(200), nullable=True)  # public clients have none
    client_name = Column(String(120))
    redirect_uris = Column(Text)  # space separated
    scope = Column(Text)          # space separated
    grant_types = Column(String(120), default='authorization_code refresh_token')
    consent_policy = Column(String(16), default='always')  # always|once|skip
    access_token_ttl = Column(Integer)   # seconds, falls back to server default
    refresh_token_ttl = Column(Integer)  # seconds, falls back to server default
    status = Column(String(16), nullable=False, default='active')  # active|inactive
    created_at = Column(Integer, nullable=False, default=0)

    @property
    def redirect_uri_list(self) -> list[str]:
        return _split(self.redirect_uris)

    @property
    def scope_list(self) -> list[str]:
        return scope_to_list(self.scope) or []

    @property
    def grant_type_list(self) -> list[str]:
        return _split(self.grant_types)


# ----------------------
# Authorization flow
# ----------------------
class AuthorizationRequest(Base):
    __tablename__ = 'authorization_request'
    __table_args__ = (UniqueConstraint('client_id', 'state', name='uq_authz_request_client_state'),)
    id = Column(Integer, primary_key=True)
    request_id = Column(String(64), unique=True, nullable=False)
    client_id = Column(String(48), nullable=False)
    state = Column(String(500), nullable=False)
    redirect_uri = Column(String(512), nullable=False)
    scope = Column(Text, nullable=False)
    code_challenge = Column(String(128), nullable=False)
    code_challenge_method = Column(String(10), nullable=False, default='S256')
    nonce = Column(String(256))
    user_id = Column(Integer, ForeignKey('user.id'))
    status = Column(String(16), nullable=False, default='pending')  # pending|consented|denied|completed
    created_at = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False)


class OAuth2AuthorizationCode(Base):
    __tablename__ = 'oauth2_code'
    id = Column(Integer, primary_key=True)
    jti = Column(String(64), unique=True, nullable=False)
    client_id = Column(String(48), nullable=False)
    user_id = Column(Integer, ForeignKey('user.id'), nullable=False)
    redirect_uri = Column(String(512), nullable=False)
    scope = Column(Text)
    code_challenge = Column(String(128), nullable=False)
    code_challenge_method = Column(String(10), nullable=False, default='S256')
    nonce = Column(String(256))
    issued_at = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False)
    consumed = Column(Boolean, nullable=False, default=False)
    consumed_at = Column(Integer)


# ----------------------
# Tokens
# ----------------------
class RefreshTokenRecord(Base):
    __tablename__ = 'refresh_token'
    __table_args__ = (Index('ix_refresh_token_family', 'family_id'),)
    id = Column(Integer, primary_key=True)
    jti = Column(String(64), unique=True, nullable=False)
    family_id = Column(String(64), nullable=False)
    client_id = Column(String(48), nullable=False)
    user_id = Column(Integer, ForeignKey('user.id'), nullable=False)
    scope = Column(Text)
    issued_at = Column(Integer, nullable=False)
    expires_at = Column(Integer, nullable=False)
    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(Integer)
    replaced_by = Column(String(64))


class RevokedToken(Base):
    __tablename__ = 'revoked_token'
    id = Column(Integer, primary_key=True)
    jti = Column(String(64), unique=True, nullable=False)
    token_type = Column(String(16))
    expires_at = Column(Integer, nullable=False)
    revoked_at = Column(Integer, nullable=False)


class RememberedConsent(Base):
    __tablename__ = 'remembered_consent'
    __table_args__ = (UniqueConstraint('user_id', 'client_id', name='uq_consent_user_client'),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('user.id'), nullable=False)
    client_id = Column(String(48), nullable=False)
    scope = Column(Text, nullable=False)  # normalized scope string
    created_at = Column(Integer, nullable=False)


# ----------------------
# Operations
# ----------------------
class LoginAttempt(Base):
    __tablename__ = 'login_attempt'
    __table_args__ = (Index('ix_login_attempt_key_time', 'key', 'attempted_at'),)
    id = Column(Integer, primary_key=True)
    key = Column(String(200), nullable=False)
    attempted_at = Column(Integer, nullable=False)


class SigningKey(Base):
    __tablename__ = 'signing_key'
    id = Column(Integer, primary_key=True)
    kid = Column(String(64), unique=True, nullable=False)
    alg = Column(String(16), default='RS256')
    public_jwk = Column(Text, nullable=False)
    private_jwk = Column(Text, nullable=False)
    active = Column(Boolean, default=True)
    created_at = Column(Integer, nullable=False, default=0)


class AuditEvent(Base):
    __tablename__ = 'audit_event'
    id = Column(Integer, primary_key=True)
    created_at = Column(Integer, nullable=False)
    action = Column(String(64), nullable=False)
    outcome = Column(String(16), nullable=False)
    actor = Column(String(120))
    resource = Column(String(120))
    ip_address = Column(String(64))
    details = Column(Text)  # JSON object
