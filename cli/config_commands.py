"""Configuration management commands."""

from pathlib import Path

import click

from config import create_default_config
from cli.utils import (
    load_app_config,
    handle_error
)
from db_backup.manager import validate_configuration


def register_commands(cli):
    """Register config commands with main CLI."""

    @cli.group('config')
    @click.pass_context
    def config_group(ctx):
        """Configuration management commands."""
        pass

    @config_group.command('init')
    @click.pass_context
    def init_config(ctx):
        """Create a default configuration file.

        Credentials are best left out of the file and supplied through
        R2_ACCOUNT_ID, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY, R2_BUCKET_NAME,
        DIRECT_DATABASE_URL or DATABASE_URL.
        """
        config_path = ctx.obj['config_path']

        if Path(config_path).exists():
            click.echo(f"Configuration file already exists: {config_path}")
            if not click.confirm("Overwrite existing configuration?"):
                return

        create_default_config(config_path)
        click.echo("\nNext steps:")
        click.echo("  1. Set the storage endpoint, bucket and credentials")
        click.echo("  2. Set the database connection string")
        click.echo("  3. Run: python -m main config check")

    @config_group.command('check')
    @click.pass_context
    def check_config(ctx):
        """Check that every required setting is present."""
        verbose = ctx.obj['verbose']
        try:
            config = load_app_config(ctx.obj['config_path'])
            validate_configuration(config)
        except Exception as e:
            handle_error(e, verbose)
            return

        click.echo("✓ Configuration complete")
        click.echo(f"  Endpoint: {config.storage.resolved_endpoint}")
        click.echo(f"  Bucket: {config.storage.bucket} (prefix {config.storage.prefix})")
        click.echo(f"  Progress store: {config.progress.backend} "
                   f"({config.progress.concurrency_policy} on concurrent runs)")
