from __future__ import annotations

import re
from urllib.parse import parse_qs, urlsplit

import pytest

from authserver import create_app, pkce
from authserver.config import Settings

ADMIN_PORTAL_CALLBACK = 'http://localhost:3002/auth/callback'
REPORTS_CALLBACK = 'https://reports.example.com/callback'
REPORTS_SECRET = 'reports-secret-value'
OTHER_CALLBACK = 'https://other.example.com/callback'


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def query_of(location: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


def hidden_field(html: str, name: str) -> str:
    match = re.search(rf'name="{name}" value="([^"]*)"', html)
    assert match, f'no hidden field {name}'
    return match.group(1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_secret='test-secret',
        database_url=f'sqlite:///{tmp_path / "oauth.db"}',
        issuer='http://localhost',
        client_cache_ttl=0,
        log_level='WARNING',
    )


@pytest.fixture
def app(settings, clock):
    app = create_app(settings, clock)
    app.config['TESTING'] = True
    ext = app.extensions['authserver']
    ext.registry.register(
        'admin-portal', 'public',
        [ADMIN_PORTAL_CALLBACK, 'https://admin-portal.example.com/auth/callback'],
        'openid profile email phone offline_access', ['authorization_code', 'refresh_token'],
        client_name='Admin Portal', consent_policy='always', access_token_ttl=3600)
    ext.registry.register(
        'reports', 'confidential', [REPORTS_CALLBACK], 'openid profile reports.read',
        ['authorization_code', 'refresh_token', 'client_credentials'],
        client_name='Reports', consent_policy='skip', client_secret=REPORTS_SECRET)
    ext.registry.register(
        'other-app', 'public', [OTHER_CALLBACK], 'openid profile', ['authorization_code'],
        client_name='Other App', consent_policy='skip')
    ext.users.create('alice', 'alice-password', given_name='Alice', family_name='Anderson',
                     email='alice@example.com', email_verified=True)
    ext.users.create('mallory', 'mallory-password', status='locked')
    yield app
    ext.db.dispose()


@pytest.fixture
def ext(app):
    return app.extensions['authserver']


@pytest.fixture
def client(app):
    return app.test_client()


class OAuthFlow:
    """Drives the browser side of the authorization code flow through the test client."""

    def __init__(self, client):
        self.client = client
        self.verifier = pkce.generate_verifier()

    def login(self, username='alice', password='alice-password'):
        return self.client.post('/login', data={'username': username, 'password': password})

    def authorize(self, **overrides):
        params = {
            'response_type': 'code',
            'client_id': 'admin-portal',
            'redirect_uri': ADMIN_PORTAL_CALLBACK,
            'scope': 'openid profile',
            'state': 'state-123',
            'code_challenge': pkce.derive_challenge(self.verifier),
            'code_challenge_method': 'S256',
        }
        params.update(overrides)
        params = {k: v for k, v in params.items() if v is not None}
        return self.client.get('/authorize', query_string=params)

    def consent(self, page, allow=True):
        html = page.get_data(as_text=True)
        return self.client.post('/authorize', data={
            'request_id': hidden_field(html, 'request_id'),
            'csrf_token': hidden_field(html, 'csrf_token'),
            'confirm': 'yes' if allow else 'no',
        })

    def obtain_code(self, **overrides) -> str:
        self.login()
        resp = self.authorize(**overrides)
        if resp.status_code == 200:
            resp = self.consent(resp)
        assert resp.status_code == 302, resp.get_data(as_text=True)
        return query_of(resp.headers['Location'])['code']

    def exchange(self, code, **overrides):
        data = {
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': ADMIN_PORTAL_CALLBACK,
            'client_id': 'admin-portal',
            'code_verifier': self.verifier,
        }
        data.update(overrides)
        data = {k: v for k, v in data.items() if v is not None}
        return self.client.post('/token', data=data)

    def tokens(self, **overrides) -> dict:
        resp = self.exchange(self.obtain_code(**overrides))
        assert resp.status_code == 200, resp.get_json()
        return resp.get_json()


@pytest.fixture
def flow(client) -> OAuthFlow:
    return OAuthFlow(client)
