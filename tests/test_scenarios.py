"""End-to-end flows through the HTTP surface, including concurrent redemption."""
import threading

import pytest

from authserver import pkce
from authserver.models import AuthorizationRequest, OAuth2AuthorizationCode
from tests.conftest import ADMIN_PORTAL_CALLBACK, OAuthFlow, query_of


def bearer(token):
    return {'Authorization': f'Bearer {token}'}


def count(ext, model):
    with ext.db.session() as s:
        return s.query(model).count()


# ----------------------
# Scenarios
# ----------------------
def test_authorize_login_consent_code(flow):
    first = flow.authorize()
    assert first.status_code == 302 and '/login' in first.headers['Location']
    login = flow.client.post(first.headers['Location'], data={'username': 'alice', 'password': 'alice-password'})
    assert login.status_code == 302
    # back to /authorize with the original query
    consent_page = flow.client.get(login.headers['Location'])
    assert consent_page.status_code == 200
    resp = flow.consent(consent_page)
    assert resp.status_code == 302
    assert resp.headers['Location'].startswith(ADMIN_PORTAL_CALLBACK + '?')
    query = query_of(resp.headers['Location'])
    assert query['code']
    assert query['state'] == 'state-123'


def test_exchange_code_then_replay_it(flow):
    code = flow.obtain_code()
    resp = flow.exchange(code)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['access_token'] and body['refresh_token']
    assert body['expires_in'] == 3600
    assert set(body['scope'].split()) >= {'openid', 'profile'}

    replay = flow.exchange(code)
    assert replay.status_code == 400
    assert replay.get_json()['error'] == 'invalid_grant'


def test_userinfo_then_expiry(flow, client, clock):
    tokens = flow.tokens()
    resp = client.get('/userinfo', headers=bearer(tokens['access_token']))
    assert resp.status_code == 200
    info = resp.get_json()
    for claim in ('sub', 'name', 'given_name', 'family_name'):
        assert info[claim]
    clock.advance(tokens['expires_in'] + 1)
    assert client.get('/userinfo', headers=bearer(tokens['access_token'])).status_code == 401


def test_unregistered_redirect_never_yields_a_code(flow, ext):
    flow.login()
    resp = flow.authorize(redirect_uri='http://evil.example.com')
    assert resp.status_code == 400
    assert 'Location' not in resp.headers
    assert 'evil.example.com' not in resp.get_data(as_text=True)
    assert count(ext, OAuth2AuthorizationCode) == 0
    assert count(ext, AuthorizationRequest) == 0


# ----------------------
# Properties
# ----------------------
def test_concurrent_redemption_has_exactly_one_winner(app, flow):
    code = flow.obtain_code()
    attempts = 8
    barrier = threading.Barrier(attempts)
    results = []
    lock = threading.Lock()

    def redeem():
        client = app.test_client()
        barrier.wait()
        resp = client.post('/token', data={
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': ADMIN_PORTAL_CALLBACK,
            'client_id': 'admin-portal',
            'code_verifier': flow.verifier,
        })
        with lock:
            results.append((resp.status_code, resp.get_json()))

    threads = [threading.Thread(target=redeem) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert len(results) == attempts
    winners = [body for status, body in results if status == 200]
    losers = [body for status, body in results if status != 200]
    assert len(winners) == 1
    assert all(body['error'] == 'invalid_grant' for body in losers)


def test_concurrent_refresh_has_at_most_one_winner(app, flow):
    refresh_token = flow.tokens()['refresh_token']
    attempts = 6
    barrier = threading.Barrier(attempts)
    statuses = []
    lock = threading.Lock()

    def rotate():
        client = app.test_client()
        barrier.wait()
        resp = client.post('/token', data={'grant_type': 'refresh_token', 'refresh_token': refresh_token,
                                           'client_id': 'admin-portal'})
        with lock:
            statuses.append(resp.status_code)

    threads = [threading.Thread(target=rotate) for _ in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert statuses.count(200) == 1
    assert statuses.count(400) == attempts - 1


@pytest.mark.parametrize('verifier', [
    pkce.generate_verifier(),
    pkce.derive_challenge(pkce.generate_verifier()),
    'a' * 43,
])
def test_verifier_must_hash_to_the_challenge(flow, verifier):
    resp = flow.exchange(flow.obtain_code(), code_verifier=verifier)
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'invalid_grant'


def test_verifier_equal_to_challenge_is_refused(flow):
    # what a client using the plain method would send
    code = flow.obtain_code()
    resp = flow.exchange(code, code_verifier=pkce.derive_challenge(flow.verifier))
    assert resp.get_json()['error'] == 'invalid_grant'


@pytest.mark.parametrize('redirect_uri', [
    'http://localhost:3002/auth/callback/',
    'http://localhost:3002/auth/callback?next=/',
    'http://localhost:3002/auth/callback#frag',
    'HTTP://localhost:3002/auth/callback',
    'http://localhost:3002/auth/Callback',
    'http://localhost:3002/auth/callback%2F',
    'http://localhost:3002/auth',
    'http://localhost:30021/auth/callback',
    ' http://localhost:3002/auth/callback',
])
def test_redirect_must_be_byte_exact(flow, ext, redirect_uri):
    flow.login()
    resp = flow.authorize(redirect_uri=redirect_uri)
    assert resp.status_code == 400
    assert 'Location' not in resp.headers
    assert count(ext, OAuth2AuthorizationCode) == 0


def test_token_scope_never_exceeds_code_or_client(flow, client, ext):
    tokens = flow.tokens(scope='openid profile email offline_access')
    code_scope = set(tokens['scope'].split())
    # the client loses a scope after the grant
    ext.registry.update('admin-portal', scope='openid profile offline_access')
    refreshed = client.post('/token', data={'grant_type': 'refresh_token', 'refresh_token': tokens['refresh_token'],
                                            'client_id': 'admin-portal'}).get_json()
    scopes = set(refreshed['scope'].split())
    assert scopes <= code_scope
    assert scopes <= {'openid', 'profile', 'offline_access'}
    claims = ext.codec.verify(refreshed['access_token']).value
    assert set(claims['scope'].split()) == scopes


def test_expired_credentials_are_always_rejected(flow, client, clock):
    code = flow.obtain_code()
    clock.advance(601)
    assert flow.exchange(code).get_json()['error'] == 'invalid_grant'

    tokens = flow.tokens(state='second')
    clock.advance(3600)
    assert client.get('/userinfo', headers=bearer(tokens['access_token'])).status_code == 401
    clock.advance(30 * 24 * 3600)
    resp = client.post('/token', data={'grant_type': 'refresh_token', 'refresh_token': tokens['refresh_token'],
                                       'client_id': 'admin-portal'})
    assert resp.get_json()['error'] == 'invalid_grant'


def test_code_redeemed_by_another_client(app, flow):
    code = flow.obtain_code()
    resp = flow.exchange(code, client_id='other-app')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'invalid_grant'
    # the rightful client can still redeem it
    assert flow.exchange(code).status_code == 200


def test_independent_browsers_do_not_share_sessions(app):
    a, b = OAuthFlow(app.test_client()), OAuthFlow(app.test_client())
    a.login()
    assert '/login' in b.authorize().headers['Location']
    assert a.authorize().status_code == 200
