"""Main CLI entry point - Root command group with global options."""

import click

from version import __version__


@click.group()
@click.option('--config', '-c', default='config.json', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Show detailed logging on console')
@click.version_option(version=__version__, prog_name='db-backup')
@click.pass_context
def cli(ctx, config, verbose):
    """Database backup tool.

    Snapshots the configured database (pg_dump, falling back to a logical
    export), verifies the snapshot, uploads it to S3-compatible storage and
    rotates old backups with a daily/weekly/monthly policy.

    Examples:
        # Create the default configuration
        python -m main config init

        # Automatic backup (applies retention afterwards)
        python -m main backup create

        # Manual backup with full validation
        python -m main backup create --manual --full-validation

        # Preview what retention would delete
        python -m main backup retention --dry-run
    """
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose


def register_all_commands():
    """Register all command modules with the main CLI."""
    from cli import (
        config_commands,
        backup_commands,
    )

    config_commands.register_commands(cli)
    backup_commands.register_commands(cli)


# Register all commands when module is imported
register_all_commands()
