"""
Backup routes: create, poll progress, list, validate, rotate, delete, download.
"""

import asyncio
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from db_backup.artifacts import BackupTrigger
from db_backup.errors import (
    BackupError, BackupInProgressError, BackupNotFoundError, BackupTimeoutError,
    IntegrityError
)
from db_backup.retention import format_retention_report
from web.dependencies import get_backup_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backup")

# Hard ceiling for a create request
MAX_DURATION_SECONDS = 300


class ValidateRequest(BaseModel):
    key: str
    fullValidation: bool = False


def _status_for(error: Exception) -> int:
    if isinstance(error, BackupInProgressError):
        return 409
    if isinstance(error, IntegrityError):
        return 422
    if isinstance(error, BackupTimeoutError):
        return 504
    if isinstance(error, BackupNotFoundError):
        return 404
    return 500


def error_response(error: Exception, run_id: Optional[str] = None) -> JSONResponse:
    """Structured failure body with a non-2xx status."""
    body = {'success': False}
    if isinstance(error, BackupError):
        body['error'] = error.message
        if error.details:
            body['details'] = error.details
        if isinstance(error, IntegrityError):
            body['validationErrors'] = error.validation_errors
    else:
        body['error'] = "Internal error during backup"
        body['details'] = str(error)
    if run_id:
        body['runId'] = run_id
    return JSONResponse(status_code=_status_for(error), content=body)


@router.post("/create")
async def create_backup(
    manual: bool = Query(False),
    full_validation: Optional[bool] = Query(None, alias="fullValidation"),
    manager=Depends(get_backup_manager)
):
    """Run a backup. Automatic runs (manual=false) also apply retention."""
    trigger = BackupTrigger.MANUAL if manual else BackupTrigger.AUTOMATIC
    simplified = None if full_validation is None else not full_validation
    run_id = uuid.uuid4().hex
    timeout = min(MAX_DURATION_SECONDS, manager.run_timeout_seconds)

    logger.info(f"Backup requested ({trigger.value}, run {run_id})")
    loop = asyncio.get_running_loop()

    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(None, manager.create_backup, trigger, simplified, run_id),
            timeout=timeout
        )
    except asyncio.TimeoutError:
        # The run keeps going in its worker thread; its outcome stays pollable
        logger.error(f"Backup run {run_id} exceeded {timeout}s")
        return error_response(
            BackupTimeoutError(f"Backup did not finish within {timeout}s",
                               details="Poll /api/backup/progress for the final outcome"),
            run_id
        )
    except Exception as e:
        return error_response(e, run_id)

    body = {
        'success': True,
        'message': f"Backup {result.artifact.file_name} created",
        'backup': result.to_dict(),
        'runId': result.run_id,
    }
    if result.retention is not None:
        body['retention'] = result.retention.to_dict()
    if result.diagnostics:
        body['diagnostics'] = result.diagnostics
    return body


@router.get("/progress")
async def get_progress(run_id: Optional[str] = Query(None), manager=Depends(get_backup_manager)):
    """Current state of a run (the latest one when no run id is given)."""
    state = manager.get_progress(run_id)
    return {'success': True, 'progress': state.to_dict(now=manager.clock())}


@router.get("/list")
async def list_backups(manager=Depends(get_backup_manager)):
    try:
        artifacts = await asyncio.get_running_loop().run_in_executor(None, manager.list_backups)
    except BackupError as e:
        return error_response(e)
    return {
        'success': True,
        'backups': [a.to_dict() for a in artifacts],
        'total': len(artifacts),
    }


@router.post("/validate")
async def validate_backup(request: ValidateRequest, manager=Depends(get_backup_manager)):
    """Download a stored backup and verify it."""
    if not request.key:
        raise HTTPException(status_code=400, detail="Backup key is required")

    try:
        artifact, report = await asyncio.get_running_loop().run_in_executor(
            None, manager.validate_backup, request.key, request.fullValidation
        )
    except BackupError as e:
        return error_response(e)

    return {
        'success': True,
        'validation': report.to_dict(),
        'backup': {
            'key': artifact.key,
            'lastModified': artifact.to_dict()['lastModified'],
            'metadata': artifact.to_metadata(),
        },
    }


@router.post("/retention")
async def apply_retention(dry_run: bool = Query(False), manager=Depends(get_backup_manager)):
    result = await asyncio.get_running_loop().run_in_executor(
        None, manager.apply_retention, dry_run
    )
    return {
        'success': not result.errors,
        'retention': result.to_dict(),
        'report': format_retention_report(result, manager.retention_policy),
    }


@router.post("/download/{file_name}")
async def download_url(file_name: str, expires_in: Optional[int] = Query(None),
                       manager=Depends(get_backup_manager)):
    try:
        url = await asyncio.get_running_loop().run_in_executor(
            None, manager.download_url, file_name, expires_in
        )
    except BackupError as e:
        return error_response(e)
    return {
        'success': True,
        'downloadUrl': url,
        'expiresIn': expires_in or manager.config.storage.presigned_url_expiry_seconds,
    }


@router.delete("/{file_name}")
async def delete_backup(file_name: str, manager=Depends(get_backup_manager)):
    try:
        artifact = await asyncio.get_running_loop().run_in_executor(
            None, manager.delete_backup, file_name
        )
    except BackupError as e:
        return error_response(e)
    return {'success': True, 'message': f"Backup {artifact.file_name} deleted"}
