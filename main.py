#!/usr/bin/env python3
"""Database backup tool - CLI entry point.

Examples:
    # Get help
    python -m main --help
    python -m main backup --help

    # Configure
    python -m main config init
    python -m main config check

    # Back up and rotate
    python -m main backup create               # automatic: rotates afterwards
    python -m main backup create --manual      # kept forever by retention
    python -m main backup list
    python -m main backup validate backup-2024-01-15T10-30-00-000Z.sql --full
    python -m main backup retention --dry-run
"""

from cli.main import cli

if __name__ == '__main__':
    cli()
