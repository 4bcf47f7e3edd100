import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from crm.db.session import get_session
from crm.main import app
from crm.routes.deps import get_ingestion_service
from crm.routes.webhooks import get_verifier, get_website_tenant
from crm.services.lead_ingest import IngestResult
from crm.services.webhook_security import WebhookVerifier

client = TestClient(app)

FB_PAYLOAD = {
    "object": "page",
    "entry": [
        {
            "id": "page-1",
            "time": 1704067200,
            "changes": [
                {
                    "field": "leadgen",
                    "value": {
                        "leadgen_id": "lead-123",
                        "page_id": "page-1",
                        "form_id": "form-9",
                        "created_time": 1704067200,
                    },
                }
            ],
        }
    ],
}


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


def signed(body: bytes) -> dict:
    return {
        "x-hub-signature-256": get_verifier().generate_signature(body),
        "content-type": "application/json",
    }


# Signature helpers

def test_signature_round_trip():
    verifier = WebhookVerifier("secret", "token")
    body = b'{"object":"page"}'
    assert verifier.verify_signature(body, verifier.generate_signature(body))


def test_signature_rejects_tampering_and_bad_headers():
    verifier = WebhookVerifier("secret", "token")
    signature = verifier.generate_signature(b'{"a":1}')
    assert not verifier.verify_signature(b'{"a":2}', signature)
    assert not verifier.verify_signature(b'{"a":1}', signature.replace("sha256=", "sha1="))
    assert not verifier.verify_signature(b'{"a":1}', None)
    assert not WebhookVerifier("", "token").verify_signature(b"{}", "sha256=abc")


def test_challenge():
    verifier = WebhookVerifier("secret", "token")
    assert verifier.verify_challenge("subscribe", "token")
    assert not verifier.verify_challenge("subscribe", "nope")
    assert not verifier.verify_challenge("unsubscribe", "token")
    assert not WebhookVerifier("secret", "").verify_challenge("subscribe", "")


# Facebook

def test_facebook_subscription_handshake():
    response = client.get(
        "/webhooks/facebook",
        params={"hub.mode": "subscribe", "hub.verify_token": get_verifier().verify_token, "hub.challenge": "1158201444"},
    )
    assert response.status_code == 200
    assert response.text == "1158201444"


def test_facebook_handshake_with_wrong_token():
    response = client.get(
        "/webhooks/facebook",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "x"},
    )
    assert response.status_code == 403


def test_facebook_delivery_is_acknowledged_and_queued():
    body = json.dumps(FB_PAYLOAD).encode()
    with patch("crm.routes.webhooks.process_facebook_changes", MagicMock()) as process:
        response = client.post("/webhooks/facebook", content=body, headers=signed(body))

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "EVENT_RECEIVED"}
    process.assert_called_once()
    (changes,) = process.call_args.args
    assert [c.leadgen_id for c in changes] == ["lead-123"]
    assert changes[0].form_id == "form-9"


def test_facebook_tampered_body_is_rejected_without_processing():
    original = json.dumps(FB_PAYLOAD).encode()
    tampered = original.replace(b"lead-123", b"lead-666")
    with patch("crm.routes.webhooks.process_facebook_changes", MagicMock()) as process:
        response = client.post("/webhooks/facebook", content=tampered, headers=signed(original))

    assert response.status_code == 403
    assert response.json()["code"] == "AuthorizationError"
    process.assert_not_called()


def test_facebook_missing_signature():
    with patch("crm.routes.webhooks.process_facebook_changes", MagicMock()) as process:
        response = client.post("/webhooks/facebook", json=FB_PAYLOAD)
    assert response.status_code == 403
    process.assert_not_called()


def test_facebook_delivery_without_leadgen_changes():
    body = json.dumps({"object": "page", "entry": [{"id": "1", "changes": [{"field": "feed", "value": {}}]}]}).encode()
    with patch("crm.routes.webhooks.process_facebook_changes", MagicMock()) as process:
        response = client.post("/webhooks/facebook", content=body, headers=signed(body))
    assert response.status_code == 200
    process.assert_not_called()


def test_facebook_invalid_json():
    body = b"{not json"
    response = client.post("/webhooks/facebook", content=body, headers=signed(body))
    assert response.status_code == 400


# Website

def website_overrides(ingestion):
    app.dependency_overrides[get_website_tenant] = lambda: 1
    app.dependency_overrides[get_ingestion_service] = lambda: ingestion


def test_website_lead_is_ingested():
    ingestion = MagicMock()
    ingestion.ingest_website_submission = AsyncMock(return_value=IngestResult(meta_id=3, lead_id=42, created=True))
    website_overrides(ingestion)

    response = client.post(
        "/webhooks/website",
        json={
            "platform": "website",
            "answers": {"Email": "web@example.com", "full_name": "Web Lead"},
            "page_url": "https://acme.test/contact",
            "utm": {"source": "google", "campaign": "spring"},
            "created_time": 1704067200000,
        },
        headers={"X-Website-Key": "acme-key"},
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "lead_id": 42}
    entity_id, submission = ingestion.ingest_website_submission.await_args.args
    assert entity_id == 1
    assert submission.utm["source"] == "google"
    assert submission.page_url == "https://acme.test/contact"
    assert submission.created_time.year == 2024


@pytest.mark.parametrize(
    "payload",
    [
        {"platform": "facebook", "answers": {"email": "a@example.com"}},
        {"platform": "website", "answers": {"full_name": "No Channel"}},
        {"platform": "website", "answers": {"email": "  ", "phone": ""}},
    ],
)
def test_website_rejects_bad_submissions(payload):
    ingestion = MagicMock()
    ingestion.ingest_website_submission = AsyncMock()
    website_overrides(ingestion)

    response = client.post("/webhooks/website", json=payload, headers={"X-Website-Key": "acme-key"})

    assert response.status_code == 400
    ingestion.ingest_website_submission.assert_not_awaited()


def test_website_unknown_key_is_forbidden():
    async def fake_session():
        yield AsyncMock()

    app.dependency_overrides[get_session] = fake_session
    with patch("crm.services.lead_store.resolve_website_tenant", AsyncMock(return_value=None)):
        response = client.post(
            "/webhooks/website",
            json={"platform": "website", "answers": {"email": "a@example.com"}},
            headers={"X-Website-Key": "unknown"},
        )
    assert response.status_code == 403
