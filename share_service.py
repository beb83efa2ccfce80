# share_service.py
"""Tokenized, permission-scoped, optionally expiring read access to an
upload's anomaly results.

Resolution is token-gated only: the owner's session plays no part, and a
grant never carries write access.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db import Anomaly, CsvUpload, ShareAccessLog, SharedResult, User, utcnow
from errors import ExpiredError, NotFoundError, PermissionDeniedError, ReferentialError, ValidationError
from upload_service import list_upload_anomalies

logger = logging.getLogger(__name__)

PERMISSIONS = ("view_only", "view_download")
EXPIRATION_OPTIONS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "never": None,
}
ACCESS_LOG_LIMIT = 100


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ShareGrant:
    shared: SharedResult
    upload: CsvUpload
    anomalies: List[Anomaly]
    owner: User

    @property
    def can_download(self) -> bool:
        return self.shared.permissions == "view_download"

    def require_download(self):
        if not self.can_download:
            raise PermissionDeniedError("Download not permitted for this shared result")


def generate_share_token() -> str:
    return secrets.token_hex(24)


def expiration_to_datetime(option: Optional[str], now: datetime) -> Optional[datetime]:
    if option is None:
        return None
    if option not in EXPIRATION_OPTIONS:
        raise ValidationError("expirationOption", option, "|".join(EXPIRATION_OPTIONS),
                              message=f"Unknown expiration option '{option}'")
    delta = EXPIRATION_OPTIONS[option]
    return now + delta if delta is not None else None


def is_expired(shared: SharedResult, now: datetime) -> bool:
    return shared.expires_at is not None and now > shared.expires_at


def _check_permissions(permissions: str):
    if permissions not in PERMISSIONS:
        raise ValidationError("permissions", permissions, "|".join(PERMISSIONS),
                              message=f"Unknown permissions '{permissions}'")


async def create_share_link(db: AsyncSession, upload_id: str, owner_id: str, permissions: str = "view_only",
                            expiration_option: Optional[str] = None, title: Optional[str] = None,
                            description: Optional[str] = None, now: Optional[datetime] = None) -> SharedResult:
    _check_permissions(permissions)
    now = now or utcnow()
    expires_at = expiration_to_datetime(expiration_option, now)

    upload = await db.get(CsvUpload, upload_id)
    if upload is None: raise NotFoundError("CsvUpload", upload_id)
    if upload.user_id != owner_id: raise PermissionDeniedError("Access denied. You can only share your own files.")
    anomaly_count = (await db.execute(select(func.count(Anomaly.id)).where(Anomaly.upload_id == upload_id))).scalar_one()
    if anomaly_count == 0:
        raise ValidationError("anomalyCount", 0, ">= 1",
                              message="No anomalies found for this upload. Please analyze the file first.")

    shared = SharedResult(csv_upload_id=upload_id, user_id=owner_id, share_token=generate_share_token(),
                          permissions=permissions, expires_at=expires_at, view_count=0,
                          title=title, description=description, created_at=now, updated_at=now)
    db.add(shared)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ReferentialError("CsvUpload", upload_id) from exc
    await db.refresh(shared)
    logger.info("Share link %s created for upload %s (%s, expires %s)", shared.id, upload_id, permissions, expires_at or "never")
    return shared


async def resolve_share_link(db: AsyncSession, share_token: str, context: Optional[RequestContext] = None,
                             now: Optional[datetime] = None, action: str = "view") -> ShareGrant:
    """Looks the token up, rejects expired links (and downloads on view-only
    links), then counts the access.

    The counter is bumped with a single SQL increment and the log entry is a
    separate row, so concurrent resolutions never overwrite each other.
    """
    now = now or utcnow()
    context = context or RequestContext()
    stmt = (select(SharedResult, CsvUpload, User)
            .join(CsvUpload, SharedResult.csv_upload_id == CsvUpload.id)
            .join(User, SharedResult.user_id == User.id)
            .where(SharedResult.share_token == share_token))
    row = (await db.execute(stmt)).first()
    if row is None: raise NotFoundError("SharedResult", share_token)
    shared, upload, owner = row
    if is_expired(shared, now): raise ExpiredError(shared.expires_at)
    if action == "download" and shared.permissions != "view_download":
        raise PermissionDeniedError("Download not permitted for this shared result")
    anomalies = await list_upload_anomalies(db, upload.id)
    if action == "download" and not anomalies:
        raise NotFoundError("Anomaly", upload.id, message="No anomalies found for this shared result")

    result = await db.execute(
        update(SharedResult)
        .where(SharedResult.id == shared.id)
        .values(view_count=SharedResult.view_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError("SharedResult", share_token)
    db.add(ShareAccessLog(shared_result_id=shared.id, accessed_at=now, action=action,
                          ip_address=context.ip_address, user_agent=context.user_agent))
    try:
        await db.commit()
    except IntegrityError as exc:
        # revoked between lookup and commit
        await db.rollback()
        raise NotFoundError("SharedResult", share_token) from exc
    await db.refresh(shared)
    return ShareGrant(shared=shared, upload=upload, anomalies=anomalies, owner=owner)


async def list_user_shares(db: AsyncSession, user_id: str) -> List[Tuple[SharedResult, CsvUpload]]:
    stmt = (select(SharedResult, CsvUpload).join(CsvUpload, SharedResult.csv_upload_id == CsvUpload.id)
            .where(SharedResult.user_id == user_id).order_by(desc(SharedResult.created_at)))
    return [(shared, upload) for shared, upload in (await db.execute(stmt)).all()]


async def get_owned_share(db: AsyncSession, share_id: str, user_id: str) -> SharedResult:
    shared = await db.get(SharedResult, share_id)
    if shared is None: raise NotFoundError("SharedResult", share_id)
    if shared.user_id != user_id: raise PermissionDeniedError("Access denied. You can only manage your own shared results.")
    return shared


async def update_share_link(db: AsyncSession, shared: SharedResult, changes: Dict[str, Any],
                            now: Optional[datetime] = None) -> SharedResult:
    """Applies ``permissions``, ``expiration_option``, ``title`` and
    ``description`` from ``changes``; keys that are absent stay untouched."""
    now = now or utcnow()
    if changes.get("permissions") is not None:
        _check_permissions(changes["permissions"])
        shared.permissions = changes["permissions"]
    if changes.get("expiration_option") is not None:
        shared.expires_at = expiration_to_datetime(changes["expiration_option"], now)
    if "title" in changes: shared.title = changes["title"]
    if "description" in changes: shared.description = changes["description"]
    shared.updated_at = now
    await db.commit(); await db.refresh(shared)
    return shared


async def revoke_share_link(db: AsyncSession, shared: SharedResult):
    shared_id = shared.id
    await db.execute(delete(ShareAccessLog).where(ShareAccessLog.shared_result_id == shared_id))
    await db.execute(delete(SharedResult).where(SharedResult.id == shared_id))
    await db.commit()
    logger.info("Share link %s revoked", shared_id)


async def list_access_logs(db: AsyncSession, shared_id: str, limit: int = ACCESS_LOG_LIMIT) -> List[ShareAccessLog]:
    stmt = (select(ShareAccessLog).where(ShareAccessLog.shared_result_id == shared_id)
            .order_by(desc(ShareAccessLog.accessed_at), desc(ShareAccessLog.id)).limit(limit))
    logs = list((await db.execute(stmt)).scalars().all())
    logs.reverse()
    return logs
