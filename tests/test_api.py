from datetime import datetime
from io import BytesIO

from openpyxl import load_workbook
from sqlalchemy import delete, update

from anomaly_report import XLSX_MEDIA_TYPE
from conftest import auth_headers, sample_rows
from db import Anomaly, SharedResult, User

OWNER = auth_headers("owner-1", email="owner@example.com", first_name="Olga", last_name="Owner")
OTHER = auth_headers("other-1", email="other@example.com", first_name="Oleg")


def create_upload(client, headers=OWNER, **overrides):
    body = {"filename": "sales.csv", "custom_filename": "Q1 sales", "time_series_data": sample_rows()}
    body.update(overrides)
    return client.post("/uploads", json=body, headers=headers)


def create_analyzed_upload(client):
    upload = create_upload(client).json()
    response = client.post(f"/uploads/{upload['id']}/anomalies", headers=OWNER, json=[
        {"anomaly_type": "p90_exceeded", "detected_date": "2024-01-03", "p90_value": 120.0, "week_before_value": 95.0,
         "description": "Value above the p90 band"}])
    assert response.status_code == 201
    return upload


def test_missing_or_bad_token_is_401(client):
    assert client.get("/uploads").status_code == 401
    assert client.get("/uploads", headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401


def test_users_me_upserts_from_token_claims(client):
    response = client.get("/users/me", headers=OWNER)
    assert response.status_code == 200
    body = response.json()
    assert (body["id"], body["email"], body["first_name"], body["role"]) == ("owner-1", "owner@example.com", "Olga", "user")


def test_upload_over_row_limit_is_400_with_limit_detail(client):
    response = create_upload(client, row_count=10_001)
    assert response.status_code == 400
    body = response.json()
    assert (body["error"], body["limit"], body["observed"], body["allowed"]) == ("validation_error", "rowCount", 10_001, 10_000)


def test_upload_share_and_resolve_flow(client):
    upload = create_analyzed_upload(client)
    assert upload["row_count"] == 5 and upload["custom_filename"] == "Q1_sales"

    response = client.post(f"/uploads/{upload['id']}/share", headers=OWNER,
                           json={"permissions": "view_download", "expiration_option": "24h", "title": "Q1 anomalies"})
    assert response.status_code == 201
    share = response.json()
    assert share["share_url"].endswith(f"/shared/{share['share_token']}")
    assert share["expires_at"] is not None

    response = client.get(f"/shared/{share['share_token']}", headers={"User-Agent": "viewer"})
    assert response.status_code == 200
    shared = response.json()
    assert shared["view_count"] == 1
    assert shared["can_download"] is True
    assert shared["shared_by"]["first_name"] == "Olga"
    assert [a["anomaly_type"] for a in shared["anomalies"]] == ["p90_exceeded"]
    assert len(shared["upload"]["time_series_data"]) == 5

    response = client.get(f"/shared/{share['share_token']}/download")
    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX_MEDIA_TYPE
    assert response.headers["content-disposition"].startswith('attachment; filename="shared-anomaly-export-sales-')
    workbook = load_workbook(BytesIO(response.content))
    assert workbook.sheetnames == ["Summary", "All Anomalies"]
    summary = {row[0]: row[1] for row in workbook["Summary"].iter_rows(values_only=True) if len(row) > 1}
    assert (summary["File Name"], summary["Total Rows"], summary["Total Anomalies"]) == ("sales.csv", 5, 1)
    assert summary["Shared By"] == "Olga Owner"
    rows = list(workbook["All Anomalies"].iter_rows(values_only=True))
    assert rows[0][:4] == ("Task Name", "Priority", "Status", "Progress %")
    assert rows[1] == ("Anomaly 1: 2024-01-03", "Low", "Open", 10, "2024-01-03", "P90 Exceeded",
                       "Value above the p90 band", "120.00", "95.00", "No AI analysis available")

    logs = client.get(f"/shares/{share['id']}/access-logs", headers=OWNER).json()
    assert [log["action"] for log in logs] == ["view", "download"]
    assert logs[0]["user_agent"] == "viewer"

    shares = client.get("/shares", headers=OWNER).json()
    assert shares[0]["view_count"] == 2
    assert shares[0]["upload"]["id"] == upload["id"]


def test_view_only_download_is_403(client):
    upload = create_analyzed_upload(client)
    share = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={}).json()
    assert share["permissions"] == "view_only"
    response = client.get(f"/shared/{share['share_token']}/download")
    assert response.status_code == 403
    assert response.json()["error"] == "permission_denied"


def test_download_of_share_without_anomalies_is_404(client, run_sql):
    upload = create_analyzed_upload(client)
    share = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={"permissions": "view_download"}).json()
    run_sql(delete(Anomaly).where(Anomaly.upload_id == upload["id"]))
    response = client.get(f"/shared/{share['share_token']}/download")
    assert response.status_code == 404
    assert response.json()["message"] == "No anomalies found for this shared result"
    assert client.get(f"/shares/{share['id']}/access-logs", headers=OWNER).json() == []


def test_expired_link_is_410(client, run_sql):
    upload = create_analyzed_upload(client)
    share = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={"expiration_option": "7d"}).json()
    run_sql(update(SharedResult).where(SharedResult.id == share["id"]).values(expires_at=datetime(2000, 1, 1)))
    response = client.get(f"/shared/{share['share_token']}")
    assert response.status_code == 410
    assert response.json()["expires_at"] == "2000-01-01T00:00:00"


def test_unknown_token_is_404(client):
    assert client.get("/shared/" + "ab" * 24).status_code == 404


def test_share_without_anomalies_is_400(client):
    upload = create_upload(client).json()
    response = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={})
    assert response.status_code == 400
    assert response.json()["limit"] == "anomalyCount"


def test_other_users_upload_is_403_and_missing_is_404(client):
    upload = create_upload(client).json()
    client.get("/users/me", headers=OTHER)
    assert client.get(f"/uploads/{upload['id']}", headers=OTHER).status_code == 403
    assert client.post(f"/uploads/{upload['id']}/share", headers=OTHER, json={}).status_code == 403
    assert client.get("/uploads/does-not-exist", headers=OWNER).status_code == 404


def test_enrolling_in_missing_course_is_422(client):
    response = client.post("/courses/does-not-exist/enroll", headers=OWNER)
    assert response.status_code == 422
    assert response.json()["entity"] == "Course"


def test_file_upload_and_owner_download(client):
    content = b"date,value,P90\n2024-01-01,10,12\n2024-01-02,11,12\n"
    response = client.post("/uploads/file", headers=OWNER, data={"custom_filename": "my data"},
                           files={"file": ("data.csv", content, "text/csv")})
    assert response.status_code == 201
    upload = response.json()
    assert (upload["row_count"], upload["column_count"], upload["file_size"]) == (2, 3, len(content))
    assert upload["file_metadata"]["percentileColumns"] == ["P90"]
    assert upload["file_metadata"]["serverProcessed"] is True

    response = client.get(f"/uploads/{upload['id']}/download", headers=OWNER)
    assert response.status_code == 200
    assert response.content == content


def test_rename_status_and_delete_upload(client):
    upload = create_analyzed_upload(client)
    share = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={}).json()
    response = client.patch(f"/uploads/{upload['id']}", headers=OWNER, json={"custom_filename": "renamed", "status": "completed"})
    assert response.status_code == 200
    assert response.json()["custom_filename"] == "renamed"
    assert response.json()["processed_at"] is not None

    assert client.delete(f"/uploads/{upload['id']}", headers=OWNER).status_code == 200
    assert client.get(f"/shared/{share['share_token']}").status_code == 404
    assert client.get("/uploads", headers=OWNER).json() == []


def test_update_and_revoke_share(client):
    upload = create_analyzed_upload(client)
    share = client.post(f"/uploads/{upload['id']}/share", headers=OWNER, json={"title": "old"}).json()
    response = client.patch(f"/shares/{share['id']}", headers=OWNER, json={"permissions": "view_download"})
    assert response.status_code == 200
    assert (response.json()["permissions"], response.json()["title"]) == ("view_download", "old")
    assert client.patch(f"/shares/{share['id']}", headers=OTHER, json={"title": "x"}).status_code == 403
    assert client.delete(f"/shares/{share['id']}", headers=OWNER).status_code == 200
    assert client.get(f"/shared/{share['share_token']}").status_code == 404


def test_user_anomalies_listing(client):
    upload = create_analyzed_upload(client)
    anomalies = client.get("/anomalies", headers=OWNER).json()
    assert [(a["upload_id"], a["upload_custom_filename"]) for a in anomalies] == [(upload["id"], "Q1_sales")]
    assert client.get("/anomalies", headers=OTHER).json() == []


def test_admin_routes_require_admin_role(client, run_sql):
    course = {"title": "Python Basics", "description": "Intro", "level": "beginner", "price": 0}
    client.get("/users/me", headers=OWNER)
    assert client.post("/courses", headers=OWNER, json=course).status_code == 403
    run_sql(update(User).where(User.id == "owner-1").values(role="admin"))
    response = client.post("/courses", headers=OWNER, json=course)
    assert response.status_code == 201
    course_id = response.json()["id"]

    enrollment = client.post(f"/courses/{course_id}/enroll", headers=OTHER).json()
    response = client.patch(f"/enrollments/{enrollment['id']}/progress", headers=OTHER, json={"progress": 100})
    assert response.json()["completed"] is True
    assert client.patch(f"/enrollments/{enrollment['id']}/progress", headers=OTHER, json={"progress": 120}).status_code == 400

    response = client.patch("/admin/users/other-1/approval", headers=OWNER, json={"is_approved": True})
    assert response.json()["is_approved"] is True


def test_quiz_flow(client, run_sql):
    client.get("/users/me", headers=OWNER)
    run_sql(update(User).where(User.id == "owner-1").values(role="admin"))
    course_id = client.post("/courses", headers=OWNER, json={"title": "Stats", "description": "d", "level": "advanced", "price": 100}).json()["id"]
    quiz = client.post(f"/courses/{course_id}/quizzes", headers=OWNER, json={"title": "Check", "questions": [{"q": "2+2?", "answer": "4"}]}).json()
    response = client.post(f"/quizzes/{quiz['id']}/results", headers=OTHER, json={"score": 1, "total_questions": 1, "answers": {"0": "4"}})
    assert response.status_code == 201
    assert client.post(f"/quizzes/{quiz['id']}/results", headers=OTHER, json={"score": 3, "total_questions": 1, "answers": {}}).status_code == 400
    assert len(client.get("/users/me/quiz-results", headers=OTHER).json()) == 1
    assert len(client.get(f"/courses/{course_id}/quizzes").json()) == 1


def test_support_message_without_login(client, run_sql):
    response = client.post("/support", json={"name": "Guest", "email": "guest@example.com", "subject": "Hi", "message": "Question"})
    assert response.status_code == 201
    assert response.json()["user_id"] is None
    assert client.post("/support", json={"name": "Guest", "email": "not-an-email", "subject": "Hi", "message": "Q"}).status_code == 422

    client.get("/users/me", headers=OWNER)
    run_sql(update(User).where(User.id == "owner-1").values(role="admin"))
    pending = client.get("/admin/support", headers=OWNER, params={"status": "pending"}).json()
    assert len(pending) == 1
    resolved = client.patch(f"/admin/support/{pending[0]['id']}/resolve", headers=OWNER).json()
    assert resolved["status"] == "resolved"
