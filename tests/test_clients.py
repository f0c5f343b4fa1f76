import base64

import pytest
from sqlalchemy.exc import IntegrityError

from authserver.clients import ClientRegistry, ConfidentialClient, PublicClient
from tests.conftest import ADMIN_PORTAL_CALLBACK, REPORTS_SECRET


def basic(client_id, secret):
    raw = base64.b64encode(f'{client_id}:{secret}'.encode()).decode()
    return {'Authorization': f'Basic {raw}'}


def test_resolve_returns_tagged_variants(ext):
    public = ext.registry.resolve('admin-portal').value
    confidential = ext.registry.resolve('reports').value
    assert isinstance(public, PublicClient) and public.client_type == 'public'
    assert isinstance(confidential, ConfidentialClient) and confidential.client_type == 'confidential'
    assert public.pkce_required and confidential.pkce_required
    assert 'reports-secret-value' not in repr(confidential)


def test_resolve_unknown_and_inactive(ext):
    assert ext.registry.resolve('nope').error.error == 'invalid_client'
    ext.registry.deactivate('other-app')
    assert ext.registry.resolve('other-app').error.error == 'invalid_client'


def test_redirect_uri_exact_match_only(ext):
    client = ext.registry.resolve('admin-portal').value
    assert ClientRegistry.validate_redirect_uri(client, ADMIN_PORTAL_CALLBACK)
    for near_miss in [
        ADMIN_PORTAL_CALLBACK + '/',
        ADMIN_PORTAL_CALLBACK + '?x=1',
        ADMIN_PORTAL_CALLBACK.upper(),
        'http://localhost:3002/auth',
        'http://localhost:3002/auth/callback/../evil',
        'http://evil.example.com',
        '',
        None,
    ]:
        assert not ClientRegistry.validate_redirect_uri(client, near_miss), near_miss


def test_validate_scopes(ext):
    client = ext.registry.resolve('admin-portal').value
    assert ClientRegistry.validate_scopes(client, 'profile openid openid').value == ['openid', 'profile']
    assert ClientRegistry.validate_scopes(client, 'openid admin').error.error == 'invalid_scope'
    assert ClientRegistry.validate_scopes(client, '').error.error == 'invalid_scope'


def test_public_client_authenticates_with_client_id(ext):
    result = ext.registry.authenticate_request({'client_id': 'admin-portal'}, {})
    assert result.ok and result.value.client_id == 'admin-portal'


def test_public_client_must_not_send_a_secret(ext):
    result = ext.registry.authenticate_request({'client_id': 'admin-portal', 'client_secret': 'x'}, {})
    assert result.error.error == 'invalid_client'


def test_confidential_client_secret_basic_and_post(ext):
    assert ext.registry.authenticate_request({}, basic('reports', REPORTS_SECRET)).ok
    assert ext.registry.authenticate_request({'client_id': 'reports', 'client_secret': REPORTS_SECRET}, {}).ok


def test_confidential_client_wrong_or_missing_secret(ext):
    bad = ext.registry.authenticate_request({}, basic('reports', 'wrong'))
    assert bad.error.status_code == 401
    assert bad.error.headers['WWW-Authenticate'].startswith('Basic')
    missing = ext.registry.authenticate_request({'client_id': 'reports'}, {})
    assert missing.error.error == 'invalid_client'
    assert 'WWW-Authenticate' not in missing.error.headers


def test_basic_and_body_client_id_must_agree(ext):
    result = ext.registry.authenticate_request({'client_id': 'admin-portal'}, basic('reports', REPORTS_SECRET))
    assert result.error.error == 'invalid_request'


def test_register_confidential_generates_secret(ext):
    client, secret = ext.registry.register('svc', 'confidential', [], 'reports.read', ['client_credentials'])
    assert secret and len(secret) >= 32
    assert ext.registry.authenticate_request({'client_id': 'svc', 'client_secret': secret}, {}).ok


def test_register_rejects_bad_input(ext):
    with pytest.raises(ValueError):
        ext.registry.register('x', 'public', ['https://x/cb'], 'openid', ['client_credentials'])
    with pytest.raises(ValueError):
        ext.registry.register('x', 'public', ['https://x/cb'], 'openid', ['implicit'])
    with pytest.raises(IntegrityError):
        ext.registry.register('admin-portal', 'public', ['https://x/cb'], 'openid')


def test_update_invalidates_cache(ext, settings, clock):
    cached = ClientRegistry(ext.db, cache_ttl=300, clock=clock)
    assert cached.get('admin-portal').consent_policy == 'always'
    cached.update('admin-portal', consent_policy='once', redirect_uris=['https://new.example.com/cb'])
    client = cached.get('admin-portal')
    assert client.consent_policy == 'once'
    assert client.redirect_uris == ('https://new.example.com/cb',)
