"""Backup commands: create, list, validate, rotate and delete database backups."""

import click
from tabulate import tabulate

from cli.utils import (
    load_app_config,
    get_backup_manager,
    setup_logging,
    handle_error,
    confirm_action
)
from db_backup.artifacts import BackupTrigger, format_size
from db_backup.retention import format_retention_report


def _load_manager(ctx):
    config = load_app_config(ctx.obj['config_path'])
    setup_logging(config, ctx.obj['verbose'])
    return get_backup_manager(config)


def register_commands(cli):
    """Register backup commands with main CLI."""

    @cli.group('backup')
    @click.pass_context
    def backup_group(ctx):
        """Create and manage database backups in object storage."""
        pass

    @backup_group.command('create')
    @click.option('--manual', is_flag=True,
                  help='Mark as a manual backup (exempt from retention, no rotation afterwards)')
    @click.option('--full-validation/--simplified', default=None,
                  help='Compare record counts with the live database (default depends on trigger)')
    @click.pass_context
    def create(ctx, manual, full_validation):
        """Snapshot, verify and upload the database.

        Automatic backups (the default) apply the retention policy after a
        successful upload. Manual backups are never deleted by retention.

        Examples:
            # Scheduled run
            python -m main backup create

            # Before a risky migration
            python -m main backup create --manual --full-validation
        """
        verbose = ctx.obj['verbose']
        try:
            manager = _load_manager(ctx)
            trigger = BackupTrigger.MANUAL if manual else BackupTrigger.AUTOMATIC
            simplified = None if full_validation is None else not full_validation

            click.echo(f"Creating {trigger.value} backup...")
            result = manager.create_backup(trigger=trigger, simplified=simplified)

            artifact = result.artifact
            click.echo(f"✓ Backup created: {artifact.file_name}")
            click.echo(f"  Location: {result.location}")
            click.echo(f"  Size: {artifact.size_formatted}")
            click.echo(f"  Method: {artifact.method.value}")
            click.echo(f"  Tables: {artifact.table_count}  Records: {artifact.record_count}")
            click.echo(f"  SHA-256: {artifact.checksum}")

            if result.retention is not None:
                click.echo(f"  Retention: kept {len(result.retention.kept)}, "
                           f"deleted {len(result.retention.deleted)}")
            for note in result.diagnostics:
                click.echo(f"  ! {note}")

        except Exception as e:
            handle_error(e, verbose)

    @backup_group.command('list')
    @click.pass_context
    def list_backups(ctx):
        """List stored backups, newest first."""
        verbose = ctx.obj['verbose']
        try:
            manager = _load_manager(ctx)
            artifacts = manager.list_backups()

            if not artifacts:
                click.echo("No backups found.")
                return

            table_data = [
                [
                    a.file_name,
                    a.created_at.strftime('%Y-%m-%d %H:%M'),
                    a.trigger.value,
                    a.method.value if a.method else '-',
                    a.size_formatted,
                    a.record_count,
                    '✓' if a.validated else '-',
                ]
                for a in artifacts
            ]
            headers = ['File', 'Created (UTC)', 'Type', 'Method', 'Size', 'Records', 'Validated']
            click.echo(f"\n{len(artifacts)} backup(s) found:\n")
            click.echo(tabulate(table_data, headers=headers, tablefmt='grid'))
            total = sum(a.size_bytes for a in artifacts)
            click.echo(f"\nTotal size: {format_size(total)}\n")

        except Exception as e:
            handle_error(e, verbose)

    @backup_group.command('validate')
    @click.argument('key')
    @click.option('--full', is_flag=True, help='Also compare record counts with the live database')
    @click.pass_context
    def validate(ctx, key, full):
        """Download a stored backup and verify it.

        KEY: Object key or file name of the backup
        """
        verbose = ctx.obj['verbose']
        try:
            manager = _load_manager(ctx)
            artifact, report = manager.validate_backup(key, full=full)

            status = "✓ VALID" if report.is_valid else "✗ INVALID"
            click.echo(f"{status}: {artifact.file_name}")
            click.echo(f"  Tables: {report.tables_count}  Records: {report.record_count}")
            click.echo(f"  SHA-256: {report.checksum}")
            for error in report.validation_errors:
                click.echo(f"  - {error}")
            for warning in report.warnings:
                click.echo(f"  ! {warning}")

            if not report.is_valid:
                ctx.exit(1)

        except click.exceptions.Exit:
            raise
        except Exception as e:
            handle_error(e, verbose)

    @backup_group.command('retention')
    @click.option('--dry-run', is_flag=True, help='Show what would be deleted without deleting')
    @click.pass_context
    def retention(ctx, dry_run):
        """Apply the daily/weekly/monthly retention policy."""
        verbose = ctx.obj['verbose']
        try:
            manager = _load_manager(ctx)
            result = manager.apply_retention(dry_run=dry_run)
            click.echo(format_retention_report(result, manager.retention_policy))

            if result.errors:
                ctx.exit(1)

        except click.exceptions.Exit:
            raise
        except Exception as e:
            handle_error(e, verbose)

    @backup_group.command('delete')
    @click.argument('file_name')
    @click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
    @click.pass_context
    def delete(ctx, file_name, yes):
        """Delete one stored backup.

        FILE_NAME: Backup file name (or full object key)
        """
        verbose = ctx.obj['verbose']
        try:
            if not yes and not confirm_action(f"Delete backup {file_name}?"):
                click.echo("Cancelled.")
                return

            manager = _load_manager(ctx)
            artifact = manager.delete_backup(file_name)
            click.echo(f"✓ Deleted {artifact.key}")

        except Exception as e:
            handle_error(e, verbose)

    @backup_group.command('download-url')
    @click.argument('file_name')
    @click.option('--expires-in', type=int, default=None, help='Link lifetime in seconds')
    @click.pass_context
    def download_url(ctx, file_name, expires_in):
        """Print a time-limited download link for a backup."""
        verbose = ctx.obj['verbose']
        try:
            manager = _load_manager(ctx)
            click.echo(manager.download_url(file_name, expires_in))
        except Exception as e:
            handle_error(e, verbose)
