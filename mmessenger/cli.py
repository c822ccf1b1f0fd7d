"""Flask CLI commands for inspecting and seeding messenger storage."""

import click
from flask import current_app
from flask.cli import AppGroup

from mmessenger import db
from mmessenger.model.profile import new_profile, repair_profile


messenger_cli = AppGroup('messenger', help='Messenger storage commands')


def _storage():
    return current_app.extensions['mmessenger']['storage']


@messenger_cli.command('init-db')
def init_db():
    """Create the messenger tables."""
    db.create_all()
    click.echo('Messenger tables created')


@messenger_cli.command('list-profiles')
def list_profiles():
    profiles = _storage().list_all_profiles()
    if not profiles:
        click.echo('No profiles')
        return
    for row in profiles:
        click.echo(f"{row['username']} {row['key']}")


@messenger_cli.command('create-profile')
@click.argument('username')
def create_profile(username):
    """Create an empty profile and print its key."""
    username = username.strip()
    if not username:
        raise click.ClickException('Username must not be empty')
    storage = _storage()
    key = storage.generate_key()
    storage.save(key, new_profile(username), expected_version=0)
    click.echo(key)


@messenger_cli.command('show-profile')
@click.argument('key')
def show_profile(key):
    raw = _storage().load(key)
    if raw is None:
        raise click.ClickException(f'Profile {key} not found')
    profile = repair_profile(raw)
    click.echo(f"username: {profile['username']}")
    click.echo(f"chats: {len(profile['chats'])}")
    click.echo(f"friends: {len(profile['friends'])}")
    click.echo(f"friend requests: {len(profile['friendRequests'])}")
    click.echo(f"sent requests: {len(profile['sentFriendRequests'])}")
    click.echo(f"pending events: {len(_storage().pending_events(key))}")
