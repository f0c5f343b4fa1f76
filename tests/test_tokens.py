import base64
import json

from authlib.jose import JsonWebKey, JsonWebToken

from authserver.errors import TokenError
from authserver.tokens import KeyRing, TokenCodec, TYP_ACCESS, TYP_REFRESH


def _tamper_payload(token: str, **changes) -> str:
    header, payload, signature = token.split('.')
    padded = payload + '=' * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    raw = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip('=')
    return '.'.join([header, raw, signature])


def test_issue_and_verify_round_trip(ext):
    token = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1', 'client_id': 'admin-portal', 'scope': 'openid'}, 60)
    result = ext.codec.verify(token, expected_type=TYP_ACCESS)
    assert result.ok
    claims = result.value
    assert claims['sub'] == '1'
    assert claims['iss'] == 'http://localhost'
    assert claims['exp'] - claims['iat'] == 60
    assert claims['jti']


def test_codec_owns_registered_claims(ext, clock):
    token = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1', 'exp': 9999999999, 'iss': 'evil'}, 60)
    claims = ext.codec.verify(token).value
    assert claims['iss'] == 'http://localhost'
    assert claims['exp'] == int(clock()) + 60


def test_expired_token(ext, clock):
    token = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1'}, 60)
    clock.advance(59)
    assert ext.codec.verify(token).ok
    clock.advance(1)
    result = ext.codec.verify(token)
    assert not result.ok
    assert result.error is TokenError.EXPIRED


def test_tampered_payload_is_bad_signature(ext):
    token = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1', 'scope': 'openid'}, 60)
    forged = _tamper_payload(token, scope='openid profile email')
    assert ext.codec.verify(forged).error is TokenError.BAD_SIGNATURE


def test_token_signed_by_foreign_key_is_rejected(ext):
    foreign = JsonWebKey.generate_key('RSA', 2048, options={'kid': ext.keyring.active_kid}, is_private=True)
    payload = {'typ': TYP_ACCESS, 'sub': '1', 'iss': 'http://localhost', 'iat': 1, 'exp': 9999999999, 'jti': 'x'}
    token = JsonWebToken(['RS256']).encode({'alg': 'RS256', 'kid': ext.keyring.active_kid}, payload, foreign)
    assert ext.codec.verify(token.decode()).error is TokenError.BAD_SIGNATURE


def test_unknown_kid_is_bad_signature(ext):
    foreign = JsonWebKey.generate_key('RSA', 2048, options={'kid': 'nope'}, is_private=True)
    payload = {'typ': TYP_ACCESS, 'sub': '1', 'iss': 'http://localhost', 'iat': 1, 'exp': 9999999999, 'jti': 'x'}
    token = JsonWebToken(['RS256']).encode({'alg': 'RS256', 'kid': 'nope'}, payload, foreign)
    assert ext.codec.verify(token.decode()).error is TokenError.BAD_SIGNATURE


def test_malformed_inputs(ext):
    for junk in ['', 'abc', 'a.b.c', 'a.b', None, 'x' * 50]:
        assert ext.codec.verify(junk).error is TokenError.MALFORMED


def test_unexpected_token_type_is_malformed(ext):
    token = ext.codec.issue({'typ': TYP_REFRESH, 'sub': '1'}, 60)
    assert ext.codec.verify(token, expected_type=TYP_ACCESS).error is TokenError.MALFORMED


def test_rotation_keeps_old_tokens_valid(ext):
    old_kid = ext.keyring.active_kid
    before = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1'}, 600)
    new_kid = ext.keyring.rotate('second')
    assert new_kid == 'second' != old_kid
    after = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '1'}, 600)
    assert ext.codec.verify(before).ok
    assert ext.codec.verify(after).ok
    kids = {k['kid'] for k in ext.keyring.public_jwks()['keys']}
    assert kids == {old_kid, 'second'}


def test_rotation_in_another_process_is_picked_up(ext, clock):
    # a second ring over the same database plays the part of another worker
    other = KeyRing.load(ext.db)
    other.rotate('from-elsewhere')
    token = TokenCodec(other, 'http://localhost', clock).issue({'typ': TYP_ACCESS, 'sub': '1'}, 60)
    assert ext.codec.verify(token).ok


def test_jwks_exposes_public_material_only(ext):
    for key in ext.keyring.public_jwks()['keys']:
        assert key['kty'] == 'RSA'
        assert 'd' not in key and 'p' not in key


def test_id_token_claims(ext):
    access = ext.codec.issue({'typ': TYP_ACCESS, 'sub': '7'}, 60)
    id_token = ext.codec.issue_id_token('7', 'admin-portal', access, 60, nonce='n-1')
    claims = ext.codec.verify(id_token).value
    assert claims['aud'] == 'admin-portal'
    assert claims['nonce'] == 'n-1'
    assert claims['sub'] == '7'
    assert len(claims['at_hash']) == 22
