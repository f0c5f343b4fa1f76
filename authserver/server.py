"""
OAuth 2.1 Authorization Server
------------------------------
Features:
- Authorization Code grant with mandatory PKCE (S256)
- Consent screen with per-client policy (always / once / skip)
- Rotating refresh tokens with family revocation on reuse
- client_credentials for confidential clients
- OpenID Connect ID tokens, UserInfo, discovery and JWKS
- Token revocation (RFC 7009) and introspection (RFC 7662)
- Login rate limiting and an audit trail for every protocol outcome

Stack:
- Flask (HTTP, sessions, CLI)
- Authlib (JOSE, PKCE and OAuth 2 helpers)
- SQLAlchemy (SQLite for development, PostgreSQL in production)

Run:
  pip install -e .
  flask --app authserver.server:create_app seed
  authserver  # starts on http://127.0.0.1:8000
"""
from __future__ import annotations

import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import Blueprint, Flask, current_app, g, jsonify, make_response, redirect, render_template_string, \
    request, session, url_for
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from authlib.oauth2.rfc6749.util import extract_basic_authorization

from .audit import Auditor, configure_logging
from .authorize import AuthorizationEngine, CodeIssued, ConsentRequired, LoginRequired, add_query
from .claims import SCOPE_CLAIMS, SCOPE_DESCRIPTIONS, build_userinfo
from .clients import ClientRegistry
from .clock import Clock, default_clock
from .config import Settings
from .db import Database
from .errors import OAuthError
from .exchange import ExchangeSettings, TokenExchangeEngine
from .guard import ResourceGuard, error_response, require_bearer
from .introspection import TokenAdministration
from .ratelimit import LoginRateLimiter, attempt_keys
from .templates import CONSENT_TEMPLATE, ERROR_TEMPLATE, HOME_TEMPLATE, LOGIN_TEMPLATE, SIGNOUT_TEMPLATE
from .tokens import KeyRing, TokenCodec
from .users import UserStore

log = logging.getLogger('authserver.server')

bp = Blueprint('oauth', __name__)

MAX_PENDING_CONSENTS = 10


# ----------------------
# Components
# ----------------------
@dataclass
class AuthServer:
    settings: Settings
    clock: Clock
    db: Database
    keyring: KeyRing
    codec: TokenCodec
    registry: ClientRegistry
    users: UserStore
    limiter: LoginRateLimiter
    auditor: Auditor
    authorizer: AuthorizationEngine
    exchanger: TokenExchangeEngine
    tokens: TokenAdministration
    guard: ResourceGuard

    @classmethod
    def build(cls, settings: Settings, clock: Clock) -> 'AuthServer':
        db = Database(settings.database_url, settings.db_timeout_seconds)
        db.create_all()
        keyring = KeyRing.load(db, settings.signing_key_kid, clock)
        codec = TokenCodec(keyring, settings.issuer, clock)
        registry = ClientRegistry(db, settings.client_cache_ttl, clock)
        users = UserStore(db, clock)
        auditor = Auditor(db, clock)
        return cls(
            settings=settings,
            clock=clock,
            db=db,
            keyring=keyring,
            codec=codec,
            registry=registry,
            users=users,
            limiter=LoginRateLimiter(db, settings.login_max_attempts, settings.login_window_seconds, clock),
            auditor=auditor,
            authorizer=AuthorizationEngine(db, registry, codec, users, clock, settings.auth_code_ttl, auditor),
            exchanger=TokenExchangeEngine(db, registry, codec, users, clock, ExchangeSettings(
                access_token_ttl=settings.access_token_ttl,
                refresh_token_ttl=settings.refresh_token_ttl,
                rotate_refresh_tokens=settings.rotate_refresh_tokens,
            ), auditor),
            tokens=TokenAdministration(db, registry, codec, users, clock, settings.access_token_ttl),
            guard=ResourceGuard(db, codec, users, registry, clock),
        )


def create_app(settings: Settings | None = None, clock: Clock | None = None) -> Flask:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.audit_log_path)

    app = Flask(__name__)
    app.secret_key = settings.app_secret
    # Keep the Authorization Server session for 30 days unless explicitly logged out
    app.permanent_session_lifetime = timedelta(days=30)
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    app.extensions['authserver'] = AuthServer.build(settings, clock or default_clock)
    app.register_blueprint(bp)

    from .cli import register_cli
    register_cli(app)
    log.info('authorization server ready (issuer=%s)', settings.issuer)
    return app


def _ext() -> AuthServer:
    return current_app.extensions['authserver']


def _audit(action: str, outcome: str, **kwargs) -> None:
    _ext().auditor.record(action, outcome, ip_address=request.remote_addr, **kwargs)


def _no_store(resp):
    resp.headers['Cache-Control'] = 'no-store'
    resp.headers['Pragma'] = 'no-cache'
    return resp


def _calling_client_id() -> str | None:
    basic_id, _ = extract_basic_authorization(request.headers)
    return basic_id or request.form.get('client_id')


def _safe_next(url: str | None) -> str:
    # only same-site relative paths, never a scheme-relative or absolute URL
    if url and url.startswith('/') and not url.startswith('//') and '\\' not in url:
        return url
    return url_for('oauth.index')


# ----------------------
# Routes: login & home
# ----------------------
@bp.route('/')
def index():
    return render_template_string(HOME_TEMPLATE, user=session.get('user'))


@bp.route('/login', methods=['GET', 'POST'])
def login():
    next_url = request.args.get('next')
    if request.method == 'GET':
        return render_template_string(LOGIN_TEMPLATE, next=next_url, error=None)

    ext = _ext()
    username = (request.form.get('username') or '').strip()
    password = request.form.get('password') or ''
    keys = attempt_keys(username, request.remote_addr)

    limited = ext.limiter.acquire(keys)
    if not limited.ok:
        _audit('login', 'failure', actor=username, reason='rate_limited')
        resp = make_response(render_template_string(
            LOGIN_TEMPLATE, next=next_url, error='Too many failed attempts. Try again later.'), 429)
        resp.headers.update(limited.error.headers)
        return resp

    result = ext.users.authenticate(username, password)
    if not result.ok:
        _audit('login', 'failure', actor=username, reason=result.error)
        return render_template_string(LOGIN_TEMPLATE, next=next_url, error='Invalid credentials'), 401

    user = result.value
    ext.limiter.release(limited.value)
    ext.limiter.reset(attempt_keys(username, None))
    session.clear()
    # Make the AS session persistent across browser restarts (SSO-style)
    session.permanent = True
    session['user'] = {'id': user.id, 'username': user.username}
    _audit('login', 'success', actor=str(user.id))
    return redirect(_safe_next(next_url))


@bp.route('/logout')
def logout():
    user = session.get('user')
    session.clear()
    if user:
        _audit('logout', 'success', actor=str(user['id']))
    # RP-initiated logout: only back to a URI registered for that client
    client_id = request.args.get('client_id')
    target = request.args.get('post_logout_redirect_uri')
    if client_id and target:
        client = _ext().registry.get(client_id)
        if client and client.is_active and _ext().registry.validate_redirect_uri(client, target):
            state = request.args.get('state')
            return redirect(add_query(target, {'state': state}) if state else target)
    return render_template_string(SIGNOUT_TEMPLATE)


# ----------------------
# OAuth2: /authorize (with consent)
# ----------------------
def _authorization_response(result, user):
    actor = str(user['id']) if user else None
    if not result.ok:
        rejection = result.error
        _audit('authorize', 'failure', actor=actor, resource=request.values.get('client_id'),
               error=rejection.error.error, reason=rejection.error.description)
        if rejection.redirect_url:
            return redirect(rejection.redirect_url)
        status = 500 if rejection.error.status_code >= 500 else 400
        return render_template_string(ERROR_TEMPLATE, error=rejection.error), status

    outcome = result.value
    if isinstance(outcome, LoginRequired):
        # a session for a user that is no longer active is dropped
        session.pop('user', None)
        return redirect(url_for('oauth.login', next=request.full_path))
    if isinstance(outcome, ConsentRequired):
        csrf_token = secrets.token_urlsafe(32)
        # one token per pending request so flows in several tabs do not clobber each other
        pending = dict(session.get('csrf', {}))
        pending.pop(outcome.request_id, None)
        pending[outcome.request_id] = csrf_token
        session['csrf'] = dict(list(pending.items())[-MAX_PENDING_CONSENTS:])
        return render_template_string(
            CONSENT_TEMPLATE, client=outcome.client, scopes=outcome.scopes, scope_desc=SCOPE_DESCRIPTIONS,
            request_id=outcome.request_id, csrf_token=csrf_token, username=user['username'])
    if isinstance(outcome, CodeIssued):
        _audit('authorize', 'success', actor=actor, resource=outcome.client_id, scope=outcome.scope)
        return redirect(outcome.redirect_url)
    raise TypeError(f'unexpected authorization outcome: {outcome!r}')


@bp.route('/authorize', methods=['GET', 'POST'])
def authorize():
    ext = _ext()
    user = session.get('user')
    if request.method == 'GET':
        return _authorization_response(ext.authorizer.begin(request.args, user['id'] if user else None), user)

    # POST: handle consent
    request_id = request.form.get('request_id') or ''
    pending = dict(session.get('csrf', {}))
    expected = pending.pop(request_id, None)
    session['csrf'] = pending
    supplied = request.form.get('csrf_token') or ''
    if not user or not expected or not hmac.compare_digest(expected, supplied):
        error = OAuthError.invalid_request('The consent form has expired, start again from the application')
        _audit('authorize', 'failure', actor=str(user['id']) if user else None, error=error.error, reason='csrf')
        return render_template_string(ERROR_TEMPLATE, error=error), 400
    result = ext.authorizer.decide(request_id, user['id'],
                                   allow=request.form.get('confirm') == 'yes')
    return _authorization_response(result, user)


# ----------------------
# OAuth2: /token
# ----------------------
@bp.route('/token', methods=['POST'])
def issue_token():
    grant_type = request.form.get('grant_type')
    if request.mimetype != 'application/x-www-form-urlencoded':
        error = OAuthError.invalid_request('Content-Type must be application/x-www-form-urlencoded')
        _audit('token', 'failure', error=error.error)
        return error_response(error)

    result = _ext().exchanger.exchange(request.form, request.headers)
    if not result.ok:
        _audit('token', 'failure', actor=_calling_client_id(), grant_type=grant_type,
               error=result.error.error, reason=result.error.description)
        return error_response(result.error)
    tokens = result.value
    _audit('token', 'success', actor=tokens.client_id, resource=tokens.subject, grant_type=grant_type,
           scope=tokens.scope)
    return _no_store(jsonify(tokens.to_payload()))


# ----------------------
# OIDC: /userinfo
# ----------------------
@bp.route('/userinfo', methods=['GET', 'POST'])
@require_bearer('openid')
def userinfo():
    principal = g.principal
    if principal.user is None:
        return error_response(OAuthError.invalid_token('UserInfo requires a user access token'))
    _audit('userinfo', 'success', actor=principal.client_id, resource=principal.subject)
    return _no_store(jsonify(build_userinfo(principal.user, principal.scopes)))


# ----------------------
# Token Revocation & Introspection
# ----------------------
@bp.route('/revoke', methods=['POST'])
def revoke_token():
    result = _ext().tokens.revoke(request.form, request.headers)
    if not result.ok:
        _audit('revoke', 'failure', actor=_calling_client_id(), error=result.error.error)
        return error_response(result.error)
    _audit('revoke', 'success', actor=_calling_client_id())
    # Per RFC7009, always return 200 even if token is unknown
    return _no_store(make_response('', 200))


@bp.route('/introspect', methods=['POST'])
def introspect_token():
    result = _ext().tokens.introspect(request.form, request.headers)
    if not result.ok:
        _audit('introspect', 'failure', actor=_calling_client_id(), error=result.error.error)
        return error_response(result.error)
    _audit('introspect', 'success', actor=_calling_client_id(), active=result.value['active'])
    return _no_store(jsonify(result.value))


# ----------------------
# OIDC Discovery & JWKS
# ----------------------
def _metadata() -> dict:
    issuer = _ext().settings.issuer

    def endpoint(name):
        return issuer + url_for(name)

    return {
        'issuer': issuer,
        'authorization_endpoint': endpoint('oauth.authorize'),
        'token_endpoint': endpoint('oauth.issue_token'),
        'userinfo_endpoint': endpoint('oauth.userinfo'),
        'jwks_uri': endpoint('oauth.jwks'),
        'end_session_endpoint': endpoint('oauth.logout'),
        'revocation_endpoint': endpoint('oauth.revoke_token'),
        'introspection_endpoint': endpoint('oauth.introspect_token'),
        'scopes_supported': ['openid', *SCOPE_CLAIMS, 'offline_access'],
        'claims_supported': ['sub', *(c for names in SCOPE_CLAIMS.values() for c in names)],
        'response_types_supported': ['code'],
        'response_modes_supported': ['query'],
        'grant_types_supported': ['authorization_code', 'refresh_token', 'client_credentials'],
        'code_challenge_methods_supported': ['S256'],
        'token_endpoint_auth_methods_supported': ['none', 'client_secret_basic', 'client_secret_post'],
        'revocation_endpoint_auth_methods_supported': ['none', 'client_secret_basic', 'client_secret_post'],
        'introspection_endpoint_auth_methods_supported': ['none', 'client_secret_basic', 'client_secret_post'],
        'id_token_signing_alg_values_supported': ['RS256'],
        'subject_types_supported': ['public'],
    }


@bp.route('/.well-known/openid-configuration')
def openid_config():
    return jsonify(_metadata())


@bp.route('/.well-known/oauth-authorization-server')
def oauth_metadata():
    return jsonify(_metadata())


@bp.route('/.well-known/jwks.json')
def jwks():
    return jsonify(_ext().keyring.public_jwks())


@bp.route('/health')
def health():
    # Lightweight readiness/liveness probe
    try:
        with _ext().db.session() as s:
            s.execute(text('SELECT 1'))
    except SQLAlchemyError:
        log.exception('health check failed')
        return jsonify({'status': 'unavailable'}), 503
    return jsonify({'status': 'ok'}), 200


@bp.app_errorhandler(500)
def internal_error(e):
    # details are in the log, never in the response
    error = OAuthError.server_error()
    if request.path in ('/token', '/userinfo', '/revoke', '/introspect'):
        return error_response(error)
    return render_template_string(ERROR_TEMPLATE, error=error), 500


# ----------------------
# Startup
# ----------------------
def main():
    app = create_app()
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', '8000'))
    app.run(host=host, port=port)


if __name__ == '__main__':
    main()
