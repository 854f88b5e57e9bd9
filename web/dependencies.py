"""
FastAPI dependencies for the backup web interface.
"""

import sys

from fastapi import HTTPException


def get_backup_manager():
    """Dependency to get the backup manager."""
    # Access module via sys.modules to avoid import confusion
    app_module = sys.modules['web.app']
    manager = app_module.backup_manager
    if manager is None:
        raise HTTPException(status_code=503, detail="Backup manager not initialized")
    return manager
