"""
HTTP tests for the owner and signing routers.

Backends are swapped through FastAPI dependency overrides; authentication
is overridden except where it is under test.
"""
import json

import pytest
from fastapi.testclient import TestClient

from app.auth import get_current_owner
from app.main import app
from app.services.envelope import get_envelope_orchestrator
from app.services.sign_requests import get_sign_request_service
from conftest import make_pdf


@pytest.fixture
def client(orchestrator, service, owner):
    app.dependency_overrides[get_current_owner] = lambda: owner
    app.dependency_overrides[get_envelope_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_sign_request_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def upload(client, pdf_bytes, recipients=None, **form):
    data = {"title": "Services Agreement", **form}
    if recipients is not None:
        data["recipients"] = json.dumps(recipients)
    return client.post(
        "/v1/documents",
        files={"file": ("agreement.pdf", pdf_bytes, "application/pdf")},
        data=data,
    )


def signature_json(field_id, y_pct=70.0):
    return {"id": field_id, "type": "signature", "page": 1, "xPct": 10, "yPct": y_pct, "wPct": 30, "hPct": 6}


def prepare_and_send(client, pdf_bytes, people):
    """Upload, one signature field per recipient, send. Returns the document JSON."""
    created = upload(client, pdf_bytes, [{"name": n, "email": e} for n, e in people]).json()
    placements = {
        sr["id"]: [signature_json(f"sig-{i}", 10 + 12 * i)]
        for i, sr in enumerate(created["signRequests"])
    }
    response = client.put(f"/v1/documents/{created['id']}/fields", json={"fields": placements})
    assert response.status_code == 200
    response = client.post(f"/v1/documents/{created['id']}/send")
    assert response.status_code == 200
    return created


def token_for(records_store, sign_request_id):
    return records_store.tables["sign_requests"][sign_request_id]["sign_link_token"]


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthentication:

    def test_missing_bearer_is_rejected(self, orchestrator):
        app.dependency_overrides[get_envelope_orchestrator] = lambda: orchestrator
        try:
            response = TestClient(app).get("/v1/documents")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 401
        body = response.json()
        assert body["error"] is True
        assert body["code"] == "MISSING_AUTH"


class TestDocumentRoutes:

    def test_upload_creates_draft(self, client, sample_pdf):
        response = upload(
            client,
            sample_pdf,
            [{"name": "Alice Adams", "email": "Alice@Example.com"}, {"name": "Bob Brown", "email": "bob@example.com"}],
            signingOrder="true",
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "draft"
        assert body["signingOrder"] is True
        assert body["pageCount"] == 2
        assert body["hasSignedCopy"] is False
        assert [sr["signerEmail"] for sr in body["signRequests"]] == ["alice@example.com", "bob@example.com"]
        assert [sr["order"] for sr in body["signRequests"]] == [1, 2]

    def test_empty_upload_rejected(self, client):
        response = upload(client, b"")
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_bad_recipients_json_rejected(self, client, sample_pdf):
        response = client.post(
            "/v1/documents",
            files={"file": ("a.pdf", sample_pdf, "application/pdf")},
            data={"recipients": "[{not json"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_list_and_get(self, client, sample_pdf):
        created = upload(client, sample_pdf, [{"name": "Alice Adams", "email": "alice@example.com"}]).json()

        listed = client.get("/v1/documents").json()
        assert [d["id"] for d in listed] == [created["id"]]

        fetched = client.get(f"/v1/documents/{created['id']}")
        assert fetched.status_code == 200
        assert len(fetched.json()["signRequests"]) == 1

    def test_unknown_document_is_404_envelope(self, client):
        response = client.get("/v1/documents/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["error"] is True
        assert body["code"] == "NOT_FOUND"
        assert "request_id" in body

    def test_file_download(self, client, sample_pdf):
        created = upload(client, sample_pdf).json()

        response = client.get(f"/v1/documents/{created['id']}/file")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert "agreement" in response.headers["content-disposition"].lower()
        assert response.content == sample_pdf

    def test_field_off_page_is_422(self, client):
        created = upload(client, make_pdf(pages=1), [{"name": "Alice Adams", "email": "alice@example.com"}]).json()
        sr_id = created["signRequests"][0]["id"]
        field = {**signature_json("s1"), "page": 3}

        response = client.put(f"/v1/documents/{created['id']}/fields", json={"fields": {sr_id: [field]}})

        assert response.status_code == 422
        assert response.json()["code"] == "PAGE_OUT_OF_RANGE"

    def test_malformed_body_is_validation_error(self, client, sample_pdf):
        created = upload(client, sample_pdf).json()

        response = client.post(f"/v1/documents/{created['id']}/recipients", json={"name": "No Email"})

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"]

    def test_send_counts_invitations(self, client, notifier, sample_pdf):
        created = upload(
            client, sample_pdf,
            [{"name": "Alice Adams", "email": "alice@example.com"}, {"name": "Bob Brown", "email": "bob@example.com"}],
        ).json()

        response = client.post(f"/v1/documents/{created['id']}/send")

        assert response.status_code == 200
        assert response.json() == {"success": True, "sentCount": 2}
        assert len(notifier.sent) == 2

    def test_send_bounce_is_400(self, client, notifier, sample_pdf):
        notifier.fail_for("alice@example.com", "API error 422: invalid recipient address")
        created = upload(client, sample_pdf, [{"name": "Alice Adams", "email": "alice@example.com"}]).json()

        response = client.post(f"/v1/documents/{created['id']}/send")

        assert response.status_code == 400
        assert response.json()["code"] == "EMAIL_BOUNCED"

    def test_trash_then_404(self, client, sample_pdf):
        created = upload(client, sample_pdf).json()

        assert client.delete(f"/v1/documents/{created['id']}").json()["status"] == "deleted"
        assert client.get(f"/v1/documents/{created['id']}").status_code == 404


class TestSigningRoutes:

    def test_full_signing_round(self, client, records, sample_pdf):
        created = prepare_and_send(client, sample_pdf, [("Alice Adams", "alice@example.com")])
        token = token_for(records, created["signRequests"][0]["id"])

        info = client.get(f"/v1/sign/{token}")
        assert info.status_code == 200
        assert info.json()["signRequest"]["fields"][0]["id"] == "sig-0"

        saved = client.post(
            f"/v1/sign/{token}/signature",
            json={"signatureData": "typed::Alice Adams", "fieldId": "sig-0"},
        )
        assert saved.json()["signRequest"]["signedFieldIds"] == ["sig-0"]

        done = client.post(
            f"/v1/sign/{token}/complete",
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "pytest-browser"},
        )
        assert done.status_code == 200
        body = done.json()
        assert body["status"] == "signed"
        assert body["documentStatus"] == "completed"
        assert body["signedAt"]

        stored = records.tables["sign_requests"][created["signRequests"][0]["id"]]
        assert stored["signer_ip"] == "203.0.113.9"
        assert stored["user_agent"] == "pytest-browser"

    def test_complete_with_empty_fields(self, client, records, sample_pdf):
        created = prepare_and_send(client, sample_pdf, [("Alice Adams", "alice@example.com")])
        token = token_for(records, created["signRequests"][0]["id"])

        response = client.post(f"/v1/sign/{token}/complete")

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "FIELDS_UNSIGNED"
        assert body["details"]["field_ids"] == ["sig-0"]

    def test_unknown_token(self, client):
        response = client.get("/v1/sign/" + "0" * 64)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_expired_link_is_410(self, client, records, sample_pdf):
        created = prepare_and_send(client, sample_pdf, [("Alice Adams", "alice@example.com")])
        sr_id = created["signRequests"][0]["id"]
        records.tables["sign_requests"][sr_id]["expires_at"] = "2020-01-01T00:00:00+00:00"

        response = client.get(f"/v1/sign/{token_for(records, sr_id)}")

        assert response.status_code == 410
        assert response.json()["code"] == "LINK_EXPIRED"

    def test_decline_voids(self, client, records, sample_pdf):
        created = prepare_and_send(
            client, sample_pdf, [("Alice Adams", "alice@example.com"), ("Bob Brown", "bob@example.com")]
        )
        alice, bob = (token_for(records, sr["id"]) for sr in created["signRequests"])

        response = client.post(f"/v1/sign/{alice}/decline", json={"reason": "Wrong amount"})
        assert response.status_code == 200
        assert response.json()["status"] == "declined"
        assert response.json()["documentStatus"] == "voided"

        blocked = client.post(f"/v1/sign/{bob}/signature", json={"signatureData": "typed::Bob Brown"})
        assert blocked.status_code == 409
        assert blocked.json()["code"] == "DOCUMENT_NOT_ACTIVE"

        voided_file = client.get(f"/v1/sign/{bob}/file")
        assert voided_file.status_code == 200
        assert voided_file.content != sample_pdf

    def test_signed_request_saves_after_link_expiry(self, client, records, sample_pdf):
        created = prepare_and_send(client, sample_pdf, [("Alice Adams", "alice@example.com")])
        sr_id = created["signRequests"][0]["id"]
        token = token_for(records, sr_id)
        client.post(f"/v1/sign/{token}/signature", json={"signatureData": "typed::Alice Adams", "fieldId": "sig-0"})
        assert client.post(f"/v1/sign/{token}/complete").status_code == 200
        records.tables["sign_requests"][sr_id]["expires_at"] = "2020-01-01T00:00:00+00:00"

        saved = client.post(f"/v1/sign/{token}/signature", json={"signatureData": "typed::Someone Else"})
        assert saved.status_code == 200
        assert saved.json()["signRequest"]["status"] == "signed"

        value = client.post(f"/v1/sign/{token}/field-value", json={"fieldId": "sig-0", "value": "x"})
        assert value.status_code == 200
