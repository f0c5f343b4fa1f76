"""Administration commands, available as ``flask --app authserver.server:create_app <command>``."""
from __future__ import annotations

import click
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy.exc import IntegrityError

from . import pkce
from .clients import CONSENT_POLICIES, GRANT_TYPES
from .clock import now_int
from .users import USER_STATUSES


def _ext():
    return current_app.extensions['authserver']


@click.command('init-db')
@with_appcontext
def init_db():
    """Create tables and the first signing key."""
    ext = _ext()
    ext.db.create_all()
    click.echo(f'Database ready, active signing key: {ext.keyring.active_kid}')


@click.command('create-client')
@click.argument('client_id')
@click.option('--type', 'client_type', type=click.Choice(['public', 'confidential']), default='public')
@click.option('--name', 'client_name')
@click.option('--redirect-uri', 'redirect_uris', multiple=True, help='Exact callback URI; repeat for several.')
@click.option('--scope', default='openid profile email offline_access', show_default=True)
@click.option('--grant-type', 'grant_types', multiple=True, type=click.Choice(GRANT_TYPES))
@click.option('--consent', 'consent_policy', type=click.Choice(CONSENT_POLICIES), default='always', show_default=True)
@click.option('--access-token-ttl', type=int)
@click.option('--refresh-token-ttl', type=int)
@with_appcontext
def create_client(client_id, client_type, client_name, redirect_uris, scope, grant_types, consent_policy,
                  access_token_ttl, refresh_token_ttl):
    """Register an OAuth client. The secret of a confidential client is shown once."""
    if not redirect_uris and 'client_credentials' not in grant_types:
        raise click.UsageError('at least one --redirect-uri is required')
    try:
        client, secret = _ext().registry.register(
            client_id, client_type, list(redirect_uris), scope, list(grant_types) or None,
            client_name=client_name, consent_policy=consent_policy,
            access_token_ttl=access_token_ttl, refresh_token_ttl=refresh_token_ttl)
    except ValueError as e:
        raise click.BadParameter(str(e))
    except IntegrityError:
        raise click.ClickException(f'client {client_id} already exists')
    click.echo(f'Client ID:     {client.client_id}')
    click.echo(f'Type:          {client.client_type}')
    click.echo(f'Grant types:   {" ".join(sorted(client.allowed_grant_types))}')
    click.echo(f'Redirect URIs: {" ".join(client.redirect_uris)}')
    click.echo(f'Scope:         {" ".join(sorted(client.allowed_scopes))}')
    if secret:
        click.echo(f'Client secret: {secret}  (store it now, it cannot be shown again)')


@click.command('deactivate-client')
@click.argument('client_id')
@with_appcontext
def deactivate_client(client_id):
    """Soft-delete a client; its tokens stop working at the resource guard."""
    try:
        _ext().registry.deactivate(client_id)
    except LookupError:
        raise click.ClickException(f'no such client: {client_id}')
    click.echo(f'Client {client_id} deactivated')


@click.command('create-user')
@click.argument('username')
@click.password_option()
@click.option('--email')
@click.option('--given-name')
@click.option('--family-name')
@click.option('--phone')
@with_appcontext
def create_user(username, password, email, given_name, family_name, phone):
    try:
        user = _ext().users.create(username, password, email=email, email_verified=bool(email),
                                   given_name=given_name, family_name=family_name, phone_number=phone)
    except IntegrityError:
        raise click.ClickException(f'user {username} already exists')
    click.echo(f'Created user {user.username} (id={user.id})')


@click.command('set-user-status')
@click.argument('username')
@click.argument('status', type=click.Choice(USER_STATUSES))
@with_appcontext
def set_user_status(username, status):
    """Activate, lock or deactivate a user. Existing tokens are refused once not active."""
    try:
        _ext().users.set_status(username, status)
    except LookupError:
        raise click.ClickException(f'no such user: {username}')
    click.echo(f'User {username} is now {status}')


@click.command('rotate-key')
@click.option('--kid')
@with_appcontext
def rotate_key(kid):
    """Generate a new signing key; older keys keep verifying until removed."""
    ext = _ext()
    new_kid = ext.keyring.rotate(kid, created_at=now_int(ext.clock))
    click.echo(f'Active signing key: {new_kid}')


@click.command('seed')
@with_appcontext
def seed():
    """Create the first-party admin-portal client and demo users (idempotent)."""
    ext = _ext()
    if ext.registry.get('admin-portal') is None:
        ext.registry.register(
            'admin-portal', 'public',
            ['http://localhost:3002/auth/callback', 'https://admin-portal.example.com/auth/callback'],
            'openid profile email offline_access', ['authorization_code', 'refresh_token'],
            client_name='Admin Portal', consent_policy='skip', access_token_ttl=3600)
        click.echo('Client: admin-portal (public, PKCE)')
    for username, given, family in (('alice', 'Alice', 'Anderson'), ('bob', 'Bob', 'Brown')):
        if ext.users.get_by_username(username) is None:
            ext.users.create(username, username, given_name=given, family_name=family,
                             email=f'{username}@example.com', email_verified=True)
            click.echo(f'User: {username}/{username}')
    click.echo('Seed complete')


@click.command('pkce')
def pkce_pair():
    """Print a fresh code_verifier and its S256 code_challenge."""
    verifier = pkce.generate_verifier()
    click.echo(f'code_verifier:  {verifier}')
    click.echo(f'code_challenge: {pkce.derive_challenge(verifier)}')
    click.echo('method:         S256')


def register_cli(app):
    for command in (init_db, create_client, deactivate_client, create_user, set_user_status, rotate_key, seed,
                    pkce_pair):
        app.cli.add_command(command)
