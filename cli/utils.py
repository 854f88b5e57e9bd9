"""Shared utilities for CLI commands."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import click

from config import load_config, Config
from db_backup.manager import BackupManager


def load_app_config(config_path: str) -> Config:
    """Load application configuration.

    Args:
        config_path: Path to configuration file

    Returns:
        Config instance (defaults plus environment overrides if the file is missing)
    """
    return load_config(config_path)


def get_backup_manager(config: Config) -> BackupManager:
    """Build a backup manager with a console upload progress bar."""
    return BackupManager.from_config(config, show_progress=True)


def setup_logging(config: Config, verbose: bool = False):
    """Set up logging with silent console - only click.echo() messages show.

    Args:
        config: Application configuration
        verbose: Whether to show console logging
    """
    log_file = Path(config.logging.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Clear any existing handlers
    root_logger = logging.getLogger()
    root_logger.handlers = []

    file_handler = RotatingFileHandler(
        config.logging.file,
        maxBytes=config.logging.max_bytes,
        backupCount=config.logging.backup_count
    )
    file_handler.setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    # Console handler only if verbose flag is used
    if verbose:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('LOG: %(levelname)s - %(message)s'))
        root_logger.addHandler(console_handler)

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)

    # Quiet all libraries
    for noisy in ('botocore', 'boto3', 's3transfer', 'urllib3'):
        logging.getLogger(noisy).setLevel(logging.ERROR)


def handle_error(error: Exception, verbose: bool = False):
    """Handle and display errors consistently.

    Args:
        error: Exception to handle
        verbose: Whether to show full traceback
    """
    click.echo(f"Error: {error}", err=True)
    validation_errors = getattr(error, 'validation_errors', None)
    if validation_errors:
        for reason in validation_errors:
            click.echo(f"  - {reason}", err=True)
    elif getattr(error, 'details', None):
        click.echo(f"  {error.details}", err=True)
    if verbose:
        import traceback
        click.echo(traceback.format_exc(), err=True)
    sys.exit(1)


def confirm_action(message: str, default: bool = False) -> bool:
    """Prompt user for confirmation."""
    return click.confirm(message, default=default)
