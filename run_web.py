#!/usr/bin/env python3
"""
Startup script for the database backup web service.
"""

import os
import sys
from pathlib import Path


def check_config():
    """Warn when no configuration file exists (environment variables may suffice)."""
    config_file = Path(os.environ.get('DB_BACKUP_CONFIG', 'config.json'))
    if not config_file.exists():
        print(f"Configuration file not found: {config_file}")
        print("Falling back to defaults and environment variables.")
        print("Create one with: python -m main config init")
        return False
    return True


def main():
    """Start the web service."""
    print("Database Backup Service")
    print("=" * 40)

    if check_config():
        print("✓ Configuration found")
    print()

    host = os.environ.get('DB_BACKUP_HOST', '127.0.0.1')
    port = int(os.environ.get('DB_BACKUP_PORT', '8000'))

    print(f"Listening on http://{host}:{port}")
    print("Press Ctrl+C to stop")
    print()

    try:
        import uvicorn
        from web import app
        uvicorn.run(app, host=host, port=port, reload=False)
    except KeyboardInterrupt:
        print("\nWeb service stopped by user")
    except Exception as e:
        print(f"Error starting web service: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
