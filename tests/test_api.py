"""
HTTP-level tests for the ingest API: upload, finalize, staging views, upload
sessions, admin review and the cron endpoints.
"""
from conftest import BROKER_CSV
from fastapi.testclient import TestClient

from tradebook.api.routers import staging as staging_router
from tradebook.core.config import settings
from tradebook.db.models import BrokerCsvFormat, ImportBatch, ImportStatus
from tradebook.main import app

CSV_FILE = ("trades.csv", BROKER_CSV.encode("utf-8"), "text/csv")


def _upload(client, headers, file=CSV_FILE, **form):
    return client.post("/csv/upload", files={"file": file}, data=form, headers=headers)


def _upload_and_finalize(client, headers, **body):
    batch_id = _upload(client, headers).json()["importBatchId"]
    response = client.post("/csv/finalize-mappings", json={"importBatchId": batch_id, **body}, headers=headers)
    assert response.status_code == 200, response.text
    return batch_id, response.json()


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Tradebook Ingest API", "version": "1.0.0"}

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["service"] == "tradebook-ingest"


def test_upload_requires_authentication(client):
    response = client.post("/csv/upload", files={"file": CSV_FILE})

    assert response.status_code == 401
    assert response.json() == {"error": "Could not validate credentials"}


def test_auth_and_routing_errors_use_error_shape(client, auth_headers):
    bad_token = client.post("/csv/finalize-mappings", json={"importBatchId": "x"}, headers={"Authorization": "Bearer nope"})
    assert bad_token.status_code == 401
    assert bad_token.json() == {"error": "Could not validate credentials"}

    forbidden = client.get("/admin/formats/pending", headers=auth_headers)
    assert forbidden.json() == {"error": "Admin privileges required"}

    assert client.get("/no-such-route").json() == {"error": "Not Found"}


def test_unhandled_errors_return_generic_500(client, auth_headers, monkeypatch):
    def broken_status(db, user_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(staging_router.staging, "get_staging_status", broken_status)
    unguarded = TestClient(app, raise_server_exceptions=False)

    response = unguarded.get("/staging/status", headers=auth_headers)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_upload_returns_mapping_proposal(client, auth_headers):
    response = _upload(client, auth_headers, broker_name="Schwab", expected_row_count="3")

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["success"] is True
    assert data["brokerName"] == "Schwab"
    assert data["rowCount"] == 3
    assert data["headers"] == ["Symbol", "Side", "Qty", "Exec Time", "Price"]
    assert data["aiMappings"]["Qty"]["field"] == "orderQuantity"
    assert data["sessionIsNew"] is True
    assert data["uploadSessionId"] == data["importBatchId"]
    assert data["requiresUserReview"] is True
    assert data["rateLimit"] == {
        "remaining": 5,
        "limit": 5,
        "resetAt": data["rateLimit"]["resetAt"],
        "isUnlimited": False,
    }


def test_upload_rejects_non_csv(client, auth_headers):
    response = _upload(client, auth_headers, file=("trades.xlsx", b"PK\x03\x04", "application/octet-stream"))

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid file type. Only CSV files are supported."


def test_upload_rejects_malformed_csv(client, auth_headers):
    response = _upload(client, auth_headers, file=("empty.csv", b"Symbol,Qty\n", "text/csv"))

    assert response.status_code == 400
    assert response.json() == {"error": "CSV file has a header row but no data rows"}


def test_upload_rejects_oversized_file(client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "upload_max_file_size_mb", 0)

    response = _upload(client, auth_headers)

    assert response.status_code == 413


def test_upload_blocked_when_quota_used(client, auth_headers, db_session, user, limiter):
    for _ in range(settings.free_tier_daily_uploads):
        limiter.increment_upload_count(db_session, user)

    response = _upload(client, auth_headers)

    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "Daily upload limit reached"
    assert body["details"]["remaining"] == 0
    assert "resetAt" in body["details"]


def test_finalize_stages_orders(client, auth_headers, limiter, db_session, user):
    batch_id, data = _upload_and_finalize(client, auth_headers)

    assert data["success"] is True
    assert data["importBatchId"] == batch_id
    assert data["successCount"] == 3
    assert data["requiresApproval"] is True
    assert data["sessionComplete"] is True
    assert data["sessionProgress"] == {"completed": 3, "expected": 3}
    assert data["brokerFormatCreated"] == "Unknown Broker Format 1"
    assert limiter.check_upload_limit(db_session, user).remaining == 4

    orders = client.get("/staging/orders", headers=auth_headers).json()
    assert orders["total"] == 3
    assert orders["hasMore"] is False
    assert {o["initialMappedData"]["symbol"] for o in orders["orders"]} == {"AAPL", "MSFT", "TSLA"}

    status = client.get("/staging/status", headers=auth_headers).json()
    assert status == {"pendingCount": 3, "totalStaged": 3, "formatsPendingApproval": 1}


def test_finalize_with_invalid_correction(client, auth_headers):
    batch_id = _upload(client, auth_headers).json()["importBatchId"]

    response = client.post(
        "/csv/finalize-mappings",
        json={"importBatchId": batch_id, "correctedMappings": {"Qty": "size"}},
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["details"]["invalid"] == {"Qty": "size"}


def test_finalize_validation_errors_are_400(client, auth_headers):
    response = client.post("/csv/finalize-mappings", json={"userApproved": True}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "Validation error"


def test_finalize_unknown_batch(client, auth_headers):
    response = client.post("/csv/finalize-mappings", json={"importBatchId": "missing"}, headers=auth_headers)

    assert response.status_code == 404
    assert response.json() == {"error": "Import batch not found"}


def test_finalize_twice_after_cancel_is_conflict(client, auth_headers):
    batch_id, data = _upload_and_finalize(client, auth_headers, userApproved=False)
    assert data["success"] is False

    response = client.post("/csv/finalize-mappings", json={"importBatchId": batch_id}, headers=auth_headers)

    assert response.status_code == 409
    assert response.json()["details"] == {"status": ImportStatus.FAILED}


def test_expired_upload_is_gone(client, auth_headers, db_session):
    batch_id = _upload(client, auth_headers).json()["importBatchId"]
    batch = db_session.get(ImportBatch, batch_id)
    batch.temp_file_content = None
    db_session.commit()

    response = client.post("/csv/finalize-mappings", json={"importBatchId": batch_id}, headers=auth_headers)

    assert response.status_code == 410


def test_complete_session_counts_upload_once(client, auth_headers, limiter, db_session, user):
    response = _upload(client, auth_headers, expected_row_count="30")
    session_id = response.json()["uploadSessionId"]
    client.post("/csv/finalize-mappings", json={"importBatchId": response.json()["importBatchId"]}, headers=auth_headers)
    assert limiter.check_upload_limit(db_session, user).remaining == 5

    first = client.post("/uploads/complete-session", json={"uploadSessionId": session_id}, headers=auth_headers)
    second = client.post("/uploads/complete-session", json={"uploadSessionId": session_id}, headers=auth_headers)

    assert first.status_code == 200
    assert first.json()["uploadCounted"] is True
    assert first.json()["totalOrders"] == 3
    assert second.json()["wasAlreadyComplete"] is True
    assert second.json()["uploadCounted"] is False
    assert limiter.check_upload_limit(db_session, user).remaining == 4


def test_complete_unknown_session(client, auth_headers):
    response = client.post("/uploads/complete-session", json={"uploadSessionId": "nope"}, headers=auth_headers)

    assert response.status_code == 404


def test_admin_routes_require_admin(client, auth_headers):
    assert client.get("/admin/formats/pending", headers=auth_headers).status_code == 403
    assert client.get("/admin/staging/stats", headers=auth_headers).status_code == 403


def test_admin_approves_pending_format(client, auth_headers, admin_headers, db_session):
    batch_id, _ = _upload_and_finalize(client, auth_headers, correctedMappings={"Price": "limitPrice"})

    pending = client.get("/admin/formats/pending", headers=admin_headers).json()
    assert len(pending["formats"]) == 1
    fmt = pending["formats"][0]
    assert fmt["pendingOrderCount"] == 3
    assert pending["stats"]["pending_formats"] == 1

    stats = client.get("/admin/staging/stats", headers=admin_headers).json()
    assert stats["totalPending"] == 3
    assert stats["formatDetails"] == [{"formatId": fmt["id"], "pendingCount": 3}]
    assert stats["health"]["staging_health"] in {"HEALTHY", "WARNING", "CRITICAL"}

    reviews = client.get("/admin/ai-reviews", headers=admin_headers).json()
    assert reviews["total"] == 1
    assert len(reviews["reviews"][0]["feedbackItems"]) == 5

    response = client.post(f"/admin/formats/{fmt['id']}/approve", headers=admin_headers)
    assert response.status_code == 200, response.text
    assert response.json()["migratedCount"] == 3
    assert response.json()["affectedBatches"] == [batch_id]

    again = client.post(f"/admin/formats/{fmt['id']}/approve", headers=admin_headers)
    assert again.status_code == 409

    reviews = client.get("/admin/ai-reviews?status=corrected", headers=admin_headers).json()
    assert reviews["total"] == 0
    reviews = client.get("/admin/ai-reviews?status=approved", headers=admin_headers).json()
    assert reviews["total"] == 1


def test_admin_rejects_pending_format(client, auth_headers, admin_headers, db_session):
    batch_id, _ = _upload_and_finalize(client, auth_headers)
    format_id = db_session.query(BrokerCsvFormat).one().id

    response = client.post(f"/admin/formats/{format_id}/reject", json={"reason": "Wrong broker"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["rejectedCount"] == 3
    db_session.expire_all()
    assert db_session.get(ImportBatch, batch_id).status == ImportStatus.FAILED


def test_admin_approve_unknown_format(client, admin_headers):
    response = client.post("/admin/formats/missing/approve", headers=admin_headers)

    assert response.status_code == 404


def test_cron_requires_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")

    assert client.post("/cron/cleanup-staging").status_code == 401
    assert client.post("/cron/cleanup-staging", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.post("/cron/cleanup-staging").json() == {"error": "Unauthorized"}


def test_cron_refuses_when_secret_unset(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "")

    assert client.post("/cron/cleanup-staging", headers={"Authorization": "Bearer "}).status_code == 401


def test_cron_cleanup_and_status(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    headers = {"Authorization": "Bearer s3cret"}

    response = client.post("/cron/cleanup-staging", headers=headers)

    assert response.status_code == 200
    report = response.json()
    assert report["success"] is True
    assert report["totalDeleted"] == 0
    assert report["errors"] == []

    status = client.get("/cron/cleanup-staging", headers=headers).json()
    assert status["cleanupStats"]["total_runs"] == 1
    assert status["healthMetrics"]["staging_health"] == "HEALTHY"
