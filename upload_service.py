# upload_service.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, desc, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db import Anomaly, CsvUpload, ShareAccessLog, SharedResult, User, utcnow
from errors import NotFoundError, PermissionDeniedError, ReferentialError, StorageError, ValidationError
from object_storage import LocalObjectStorage
from validation import render_rows_as_csv, sanitize_filename, validate_upload_submission

logger = logging.getLogger(__name__)

UPLOAD_STATUSES = ("uploaded", "processing", "completed", "error")
FINAL_STATUSES = ("completed", "error")
ANOMALY_FIELDS = ("anomaly_type", "detected_date", "week_before_value", "p90_value", "description", "openai_analysis")
REQUIRED_ANOMALY_FIELDS = ("anomaly_type", "detected_date", "description")


@dataclass
class UploadSubmission:
    filename: str
    custom_filename: str
    time_series_data: List[Dict[str, Any]]
    file_size: Optional[int] = None
    column_count: Optional[int] = None
    row_count: Optional[int] = None
    file_metadata: Optional[Dict[str, Any]] = None


def _column_count(rows: List[Dict[str, Any]]) -> int:
    columns = set()
    for row in rows: columns.update(row.keys())
    return len(columns)


async def create_upload(db: AsyncSession, storage: LocalObjectStorage, owner_id: str, submission: UploadSubmission,
                        content: Optional[bytes] = None, now: Optional[datetime] = None) -> CsvUpload:
    """Validates, stores the artifact, then inserts the row.

    ``content`` is the raw file when the CSV was uploaded as a file; for JSON
    submissions the rows are rendered back to CSV for the stored artifact.
    """
    validate_upload_submission(submission)
    rows = submission.time_series_data
    if submission.row_count is not None and submission.row_count != len(rows):
        raise ValidationError("rowCount", submission.row_count, len(rows),
                              message="row_count does not match the number of rows in time_series_data")
    row_count = len(rows)
    column_count = submission.column_count if submission.column_count is not None else _column_count(rows)
    custom_filename = sanitize_filename(submission.custom_filename)

    artifact = content if content is not None else render_rows_as_csv(rows)
    file_size = submission.file_size if submission.file_size is not None else len(artifact)
    validate_upload_submission({"file_size": file_size, "row_count": row_count, "column_count": column_count})

    if await db.get(User, owner_id) is None: raise ReferentialError("User", owner_id)

    now = now or utcnow()
    stored = await storage.upload_csv(owner_id, custom_filename, artifact)
    metadata = dict(submission.file_metadata or {})
    metadata.update({"uploadedBy": owner_id, "uploadDate": now.isoformat(), "serverProcessed": content is not None,
                     "storageProvider": "object-storage"})
    upload = CsvUpload(user_id=owner_id, filename=submission.filename, custom_filename=custom_filename,
                       storage_url=stored.url, storage_path=stored.path, file_size=file_size,
                       column_count=column_count, row_count=row_count, status="uploaded",
                       file_metadata=metadata, time_series_data=rows, uploaded_at=now)
    db.add(upload)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("Upload insert failed, removing stored artifact %s", stored.path)
        try:
            await storage.delete(stored.path)
        except StorageError as cleanup_exc:
            logger.error("Orphaned storage artifact %s: %s", stored.path, cleanup_exc.message)
            raise StorageError("cleanup", stored.path,
                               "Database write failed and the stored artifact could not be removed") from exc
        if isinstance(exc, IntegrityError): raise ReferentialError("User", owner_id) from exc
        raise
    await db.refresh(upload)
    logger.info("CSV upload %s created for user %s (%d rows, %d columns)", upload.id, owner_id, row_count, column_count)
    return upload


async def list_user_uploads(db: AsyncSession, user_id: str) -> List[CsvUpload]:
    result = await db.execute(select(CsvUpload).where(CsvUpload.user_id == user_id).order_by(desc(CsvUpload.uploaded_at)))
    return list(result.scalars().all())


async def get_owned_upload(db: AsyncSession, upload_id: str, user: User, allow_admin: bool = False) -> CsvUpload:
    upload = await db.get(CsvUpload, upload_id)
    if upload is None: raise NotFoundError("CsvUpload", upload_id)
    if upload.user_id != user.id and not (allow_admin and user.role == "admin"):
        raise PermissionDeniedError("Access denied. You can only access your own files.")
    return upload


async def rename_upload(db: AsyncSession, upload: CsvUpload, custom_filename: str) -> CsvUpload:
    upload.custom_filename = sanitize_filename(custom_filename)
    await db.commit(); await db.refresh(upload)
    return upload


async def set_upload_status(db: AsyncSession, upload: CsvUpload, status: str, now: Optional[datetime] = None) -> CsvUpload:
    if status not in UPLOAD_STATUSES:
        raise ValidationError("status", status, "|".join(UPLOAD_STATUSES), message=f"Unknown upload status '{status}'")
    upload.status = status
    upload.processed_at = (now or utcnow()) if status in FINAL_STATUSES else None
    await db.commit(); await db.refresh(upload)
    return upload


async def read_upload_file(storage: LocalObjectStorage, upload: CsvUpload) -> bytes:
    return await storage.download(upload.storage_path)


async def delete_upload(db: AsyncSession, storage: LocalObjectStorage, upload: CsvUpload):
    """Removes the upload with its anomalies and share links, then the artifact.

    The database commit happens first so no row ever points at a deleted
    artifact; a failed artifact delete is raised for the caller to retry.
    """
    upload_id, storage_path = upload.id, upload.storage_path
    share_ids = select(SharedResult.id).where(SharedResult.csv_upload_id == upload_id)
    await db.execute(delete(ShareAccessLog).where(ShareAccessLog.shared_result_id.in_(share_ids)))
    await db.execute(delete(SharedResult).where(SharedResult.csv_upload_id == upload_id))
    await db.execute(delete(Anomaly).where(Anomaly.upload_id == upload_id))
    await db.execute(delete(CsvUpload).where(CsvUpload.id == upload_id))
    await db.commit()
    logger.info("CSV upload %s deleted with its anomalies and share links", upload_id)
    try:
        await storage.delete(storage_path)
    except StorageError:
        logger.exception("Artifact %s of deleted upload %s could not be removed", storage_path, upload_id)
        raise


async def record_anomalies(db: AsyncSession, upload_id: str, items: List[Mapping[str, Any]],
                           now: Optional[datetime] = None) -> List[Anomaly]:
    for item in items:
        missing = [k for k in REQUIRED_ANOMALY_FIELDS if not item.get(k)]
        if missing: raise ValidationError(missing[0], None, "required", message=f"Anomaly field '{missing[0]}' is required")
    if await db.get(CsvUpload, upload_id) is None: raise ReferentialError("CsvUpload", upload_id)
    now = now or utcnow()
    anomalies = [Anomaly(upload_id=upload_id, created_at=now, **{k: item.get(k) for k in ANOMALY_FIELDS}) for item in items]
    db.add_all(anomalies)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ReferentialError("CsvUpload", upload_id) from exc
    for anomaly in anomalies: await db.refresh(anomaly)
    logger.info("Recorded %d anomalies for upload %s", len(anomalies), upload_id)
    return anomalies


async def list_upload_anomalies(db: AsyncSession, upload_id: str) -> List[Anomaly]:
    result = await db.execute(select(Anomaly).where(Anomaly.upload_id == upload_id)
                              .order_by(Anomaly.detected_date, Anomaly.created_at, Anomaly.id))
    return list(result.scalars().all())


async def list_user_anomalies(db: AsyncSession, user_id: str) -> List[Tuple[Anomaly, CsvUpload]]:
    stmt = (select(Anomaly, CsvUpload).join(CsvUpload, Anomaly.upload_id == CsvUpload.id)
            .where(CsvUpload.user_id == user_id).order_by(desc(Anomaly.created_at), Anomaly.detected_date))
    return [(anomaly, upload) for anomaly, upload in (await db.execute(stmt)).all()]
