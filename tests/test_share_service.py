import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import delete

import share_service
import upload_service
from conftest import sample_rows
from db import Anomaly, SharedResult
from errors import ExpiredError, NotFoundError, PermissionDeniedError, ValidationError
from share_service import RequestContext
from upload_service import UploadSubmission

pytestmark = pytest.mark.anyio

T0 = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
async def analyzed_upload(db, storage, owner):
    upload = await upload_service.create_upload(db, storage, owner.id, UploadSubmission(
        filename="sales.csv", custom_filename="sales", time_series_data=sample_rows()))
    await upload_service.record_anomalies(db, upload.id, [
        {"anomaly_type": "p90_exceeded", "detected_date": "2024-01-03", "p90_value": 120.0, "description": "above p90"}])
    return upload


def test_share_token_is_random_hex():
    tokens = {share_service.generate_share_token() for _ in range(200)}
    assert len(tokens) == 200
    assert all(len(t) == 48 and int(t, 16) >= 0 for t in tokens)


def test_expiration_options():
    assert share_service.expiration_to_datetime(None, T0) is None
    assert share_service.expiration_to_datetime("never", T0) is None
    assert share_service.expiration_to_datetime("24h", T0) == T0 + timedelta(hours=24)
    assert share_service.expiration_to_datetime("7d", T0) == T0 + timedelta(days=7)
    assert share_service.expiration_to_datetime("30d", T0) == T0 + timedelta(days=30)
    with pytest.raises(ValidationError):
        share_service.expiration_to_datetime("1y", T0)


async def test_create_share_link(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, title="Q1", now=T0)
    assert shared.permissions == "view_only"
    assert shared.view_count == 0
    assert shared.expires_at is None
    assert shared.share_token != shared.id
    assert await share_service.list_access_logs(db, shared.id) == []


async def test_share_requires_anomalies(db, storage, owner):
    upload = await upload_service.create_upload(db, storage, owner.id, UploadSubmission(
        filename="a.csv", custom_filename="a", time_series_data=sample_rows()))
    with pytest.raises(ValidationError) as exc_info:
        await share_service.create_share_link(db, upload.id, owner.id)
    assert exc_info.value.limit == "anomalyCount"


async def test_share_requires_ownership(db, owner, analyzed_upload):
    with pytest.raises(PermissionDeniedError):
        await share_service.create_share_link(db, analyzed_upload.id, "someone-else")
    with pytest.raises(NotFoundError):
        await share_service.create_share_link(db, "missing", owner.id)


async def test_never_expiring_link_resolves_much_later(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, expiration_option="never", now=T0)
    grant = await share_service.resolve_share_link(db, shared.share_token, now=T0 + timedelta(days=3650))
    assert grant.shared.id == shared.id
    assert [a.anomaly_type for a in grant.anomalies] == ["p90_exceeded"]
    assert grant.owner.first_name == "Olga"


async def test_24h_link_expiry_boundary(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, expiration_option="24h", now=T0)
    grant = await share_service.resolve_share_link(db, shared.share_token, now=T0 + timedelta(hours=23, minutes=59, seconds=59))
    assert grant.shared.view_count == 1
    await share_service.resolve_share_link(db, shared.share_token, now=T0 + timedelta(hours=24))
    with pytest.raises(ExpiredError) as exc_info:
        await share_service.resolve_share_link(db, shared.share_token, now=T0 + timedelta(hours=24, seconds=1))
    assert exc_info.value.status_code == 410
    await db.refresh(shared)
    assert shared.view_count == 2
    assert len(await share_service.list_access_logs(db, shared.id)) == 2


async def test_unknown_token_not_found(db):
    with pytest.raises(NotFoundError):
        await share_service.resolve_share_link(db, "0" * 48)


async def test_each_resolution_counts_and_logs(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, now=T0)
    for i in range(3):
        await share_service.resolve_share_link(db, shared.share_token, RequestContext("10.0.0.%d" % i, "pytest"),
                                               now=T0 + timedelta(minutes=i))
    await db.refresh(shared)
    assert shared.view_count == 3
    logs = await share_service.list_access_logs(db, shared.id)
    assert [log.ip_address for log in logs] == ["10.0.0.0", "10.0.0.1", "10.0.0.2"]
    assert all(log.action == "view" and log.user_agent == "pytest" for log in logs)


async def test_concurrent_resolutions_are_all_counted(session_factory, db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id)

    async def resolve_once(i):
        async with session_factory() as session:
            await share_service.resolve_share_link(session, shared.share_token, RequestContext(f"10.1.0.{i}"))

    await asyncio.gather(*(resolve_once(i) for i in range(10)))
    await db.refresh(shared)
    assert shared.view_count == 10
    assert len(await share_service.list_access_logs(db, shared.id)) == 10


async def test_view_only_grant_cannot_download(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, permissions="view_only")
    grant = await share_service.resolve_share_link(db, shared.share_token)
    assert not grant.can_download
    with pytest.raises(PermissionDeniedError):
        grant.require_download()
    with pytest.raises(PermissionDeniedError):
        await share_service.resolve_share_link(db, shared.share_token, action="download")
    await db.refresh(shared)
    assert shared.view_count == 1


async def test_view_download_grant_allows_download(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, permissions="view_download")
    grant = await share_service.resolve_share_link(db, shared.share_token, action="download")
    grant.require_download()
    logs = await share_service.list_access_logs(db, shared.id)
    assert [log.action for log in logs] == ["download"]


async def test_download_without_anomalies_is_not_found_and_not_counted(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, permissions="view_download")
    await db.execute(delete(Anomaly).where(Anomaly.upload_id == analyzed_upload.id))
    await db.commit()
    with pytest.raises(NotFoundError) as exc_info:
        await share_service.resolve_share_link(db, shared.share_token, action="download")
    assert exc_info.value.entity == "Anomaly"
    await db.refresh(shared)
    assert shared.view_count == 0
    assert await share_service.list_access_logs(db, shared.id) == []
    grant = await share_service.resolve_share_link(db, shared.share_token)
    assert grant.anomalies == []


async def test_update_share_link(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, title="old", now=T0)
    later = T0 + timedelta(hours=1)
    shared = await share_service.update_share_link(db, shared, {"permissions": "view_download", "expiration_option": "7d", "title": "new"}, now=later)
    assert shared.permissions == "view_download"
    assert shared.expires_at == later + timedelta(days=7)
    assert shared.title == "new"
    assert shared.updated_at == later
    shared = await share_service.update_share_link(db, shared, {"expiration_option": "never"}, now=later)
    assert shared.expires_at is None
    assert shared.title == "new"


async def test_revoked_link_no_longer_resolves(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id)
    token = shared.share_token
    await share_service.resolve_share_link(db, token)
    await share_service.revoke_share_link(db, shared)
    with pytest.raises(NotFoundError):
        await share_service.resolve_share_link(db, token)


async def test_deleting_upload_invalidates_its_links(db, storage, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id)
    token = shared.share_token
    await share_service.resolve_share_link(db, token)
    await upload_service.delete_upload(db, storage, analyzed_upload)
    with pytest.raises(NotFoundError):
        await share_service.resolve_share_link(db, token)
    assert await db.get(SharedResult, shared.id) is None


async def test_access_logs_return_latest_hundred_oldest_first(db, owner, analyzed_upload):
    shared = await share_service.create_share_link(db, analyzed_upload.id, owner.id, now=T0)
    for i in range(105):
        await share_service.resolve_share_link(db, shared.share_token, now=T0 + timedelta(seconds=i))
    logs = await share_service.list_access_logs(db, shared.id)
    assert len(logs) == 100
    assert logs[0].accessed_at == T0 + timedelta(seconds=5)
    assert logs[-1].accessed_at == T0 + timedelta(seconds=104)


async def test_list_user_shares(db, owner, analyzed_upload):
    await share_service.create_share_link(db, analyzed_upload.id, owner.id)
    shares = await share_service.list_user_shares(db, owner.id)
    assert [(s.csv_upload_id, u.custom_filename) for s, u in shares] == [(analyzed_upload.id, "sales")]
    with pytest.raises(PermissionDeniedError):
        await share_service.get_owned_share(db, shares[0][0].id, "someone-else")
