"""
Imports router — CSV bulk import of incidents.

POST /imports
  Stores the uploaded file, records an import job and hands it to the
  background runner. Answers 202 right away with the import id.

GET /imports/{import_id}
  Polled by the client. Returns, in order of preference:
    • the final result once the import completed
    • the latest progress snapshot (processing or failed)
    • 404 when the id is unknown or its cache entries expired

  If the cache has no result but import_jobs says the job finished less
  than IMPORT_RESULT_TTL_SECONDS ago, the answer is rebuilt from the
  job row and its row errors.
"""

import logging
from pathlib import PurePath
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.auth.principal import Principal, get_current_principal
from app.core.database import as_utc
from app.middleware.route import GuardedRoute, throttle
from app.models.import_job import STATUS_COMPLETED, TERMINAL_STATUSES
from app.schemas.imports import (
    ImportAccepted,
    ImportCompleted,
    ImportNotFound,
    ImportProgress,
    ImportResult,
)
from app.services.cache import CacheUnavailableError
from app.services.container import Services
from app.services.csv_import import progress_key, result_key
from app.services.storage import UploadTooLargeError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Imports"], route_class=GuardedRoute)

CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]

ALLOWED_EXTENSIONS = frozenset({".csv", ".txt"})
UPLOAD_FOLDER = "imports"


def get_services(request: Request) -> Services:
    return request.app.state.services


AppServices = Annotated[Services, Depends(get_services)]


# ── 1. Upload ───────────────────────────────────────────────
@router.post(
    "",
    response_model=ImportAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a CSV bulk import",
    description=(
        "Columns: title, description, category_id, latitude, longitude, "
        "citizen_identifier, priority, status. The header row is skipped. "
        "Processing happens in the background; poll GET /imports/{import_id}."
    ),
)
@throttle("csv-import")
async def upload_csv(
    services: AppServices,
    principal: CurrentPrincipal,
    csv_file: Annotated[UploadFile, File(description="CSV file, max 100 MB")],
) -> ImportAccepted:
    suffix = PurePath(csv_file.filename or "").suffix.lower()
    if suffix not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The csv_file must be a file of type: csv, txt.",
        )

    try:
        file_reference = await services.storage.save_upload(
            csv_file,
            folder=UPLOAD_FOLDER,
            max_bytes=services.settings.IMPORT_MAX_UPLOAD_BYTES,
            suffix=suffix,
        )
    except UploadTooLargeError as exc:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(exc),
        ) from exc

    import_id = await services.import_runner.enqueue(file_reference, principal.user_id)
    return ImportAccepted(import_id=import_id)


# ── 2. Status ───────────────────────────────────────────────
@router.get(
    "/{import_id}",
    response_model=ImportCompleted | ImportProgress,
    summary="Progress or result of a CSV import",
    responses={404: {"model": ImportNotFound}},
)
async def get_import_status(import_id: str, services: AppServices) -> Any:
    try:
        result = await services.cache.get(result_key(import_id))
        progress = None if result is not None else await services.cache.get(progress_key(import_id))
    except CacheUnavailableError as exc:
        logger.error("Could not read status of import %s", import_id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Import status is temporarily unavailable. Please retry later.",
        ) from exc

    if result is not None:
        return ImportCompleted(
            import_id=import_id,
            results=ImportResult.model_validate(result),
        )
    if progress is None or progress.get("status") == "processing":
        finished = await _finished_from_jobs(services, import_id)
        if finished is not None:
            return finished
    if progress is not None:
        return ImportProgress.model_validate(progress)
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ImportNotFound(import_id=import_id).model_dump(),
    )


async def _finished_from_jobs(
    services: Services, import_id: str
) -> ImportCompleted | ImportProgress | None:
    try:
        job = await services.import_jobs.get(import_id)
        if job is None or job.status not in TERMINAL_STATUSES or job.finished_at is None:
            return None
        finished_at = as_utc(job.finished_at)
        age = (services.clock() - finished_at).total_seconds()
        if age > services.settings.IMPORT_RESULT_TTL_SECONDS:
            return None
        if job.status == STATUS_COMPLETED:
            return ImportCompleted(
                import_id=import_id,
                results=ImportResult(
                    import_id=import_id,
                    success=job.success,
                    errors=job.errors,
                    total=job.processed,
                    error_details=await services.import_jobs.row_errors(import_id),
                ),
            )
    except SQLAlchemyError:
        logger.warning("Could not read import %s from the database", import_id, exc_info=True)
        return None

    return ImportProgress(
        import_id=import_id,
        status="failed",
        processed=job.processed,
        success=job.success,
        errors=job.errors,
        attempt=job.attempt,
        updated_at=finished_at,
        error=job.last_error,
    )
