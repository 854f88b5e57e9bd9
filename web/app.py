"""
FastAPI application initialization for the database backup service.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from version import __version__
from config import load_config, setup_logging
from db_backup.manager import BackupManager

# Setup logging (will be reconfigured after loading config)
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# Global configuration and services (initialized on startup)
config = None
backup_manager = None

app = FastAPI(
    title="Database Backup Service",
    description="Snapshot, verify, upload and rotate database backups",
    version=__version__
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Load configuration and build the backup manager."""
    global config, backup_manager

    try:
        logger.info("=" * 60)
        logger.info("Database Backup Service Starting")
        logger.info("=" * 60)

        config_path = os.environ.get('DB_BACKUP_CONFIG', 'config.json')
        logger.info(f"Loading configuration from {config_path}...")
        config = load_config(config_path)
        setup_logging(config)
        logger.info("✓ Configuration loaded")

        backup_manager = BackupManager.from_config(config)
        logger.info(f"✓ Backup manager ready (bucket: {config.storage.bucket}, "
                    f"progress store: {config.progress.backend}, "
                    f"concurrency: {config.progress.concurrency_policy})")

        logger.info("=" * 60)
        logger.info("Web interface ready!")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Shutting down backup service...")
    db_manager = getattr(getattr(backup_manager, 'progress', None), 'db_manager', None)
    if db_manager:
        db_manager.close()
        logger.info("✓ Progress database closed")
    logger.info("Shutdown complete")


@app.get("/api/version")
async def get_version():
    return {"version": __version__}


# ============================================================================
# IMPORT AND REGISTER ROUTES
# ============================================================================

from web.routes import backup

app.include_router(backup.router)

logger.info("✓ All routes registered")
