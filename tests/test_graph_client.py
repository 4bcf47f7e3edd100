from unittest.mock import AsyncMock, patch

import pytest

from crm.core.exceptions import UpstreamError
from crm.services.graph_client import FacebookGraphClient, TransientGraphError, appsecret_proof

LEAD_BODY = {
    "id": "lead-123",
    "created_time": "2024-01-01T00:00:00+0000",
    "form_id": "form-9",
    "field_data": [{"name": "email", "values": ["a@example.com"]}],
}


def make_client(**kwargs):
    kwargs.setdefault("access_token", "page-token")
    kwargs.setdefault("app_secret", "app-secret")
    kwargs.setdefault("graph_url", "https://graph.test/v18.0/")
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("retry_delay_seconds", 0)
    return FacebookGraphClient(**kwargs)


def test_params_carry_appsecret_proof():
    params = make_client().build_params()
    assert params["access_token"] == "page-token"
    assert params["appsecret_proof"] == appsecret_proof("page-token", "app-secret")
    assert "field_data" in params["fields"]


def test_params_without_app_secret():
    assert "appsecret_proof" not in make_client(app_secret="").build_params()


async def test_fetch_lead_success():
    client = make_client()
    with patch.object(client, "_request", AsyncMock(return_value=(200, LEAD_BODY))) as request:
        lead = await client.fetch_lead("lead-123")

    assert lead.leadgen_id == "lead-123"
    assert lead.form_id == "form-9"
    assert lead.field_data == LEAD_BODY["field_data"]
    url, _params = request.await_args.args
    assert url == "https://graph.test/v18.0/lead-123"


async def test_fetch_lead_retries_transient_failures():
    client = make_client()
    request = AsyncMock(side_effect=[TransientGraphError("timeout"), (503, {}), (200, LEAD_BODY)])
    with patch.object(client, "_request", request):
        lead = await client.fetch_lead("lead-123")

    assert lead.leadgen_id == "lead-123"
    assert request.await_count == 3


async def test_fetch_lead_gives_up_after_retries():
    client = make_client(max_retries=2)
    request = AsyncMock(side_effect=TransientGraphError("connection reset"))
    with patch.object(client, "_request", request):
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_lead("lead-123")

    assert request.await_count == 3
    assert exc_info.value.status_code == 502
    assert exc_info.value.details["attempts"] == 3


async def test_rate_limit_is_retried():
    client = make_client()
    request = AsyncMock(side_effect=[(429, {"error": {"message": "slow down"}}), (200, LEAD_BODY)])
    with patch.object(client, "_request", request):
        await client.fetch_lead("lead-123")
    assert request.await_count == 2


async def test_client_errors_are_not_retried():
    client = make_client()
    request = AsyncMock(return_value=(400, {"error": {"message": "Unsupported get request"}}))
    with patch.object(client, "_request", request):
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_lead("lead-123")

    assert request.await_count == 1
    assert exc_info.value.details["status_code"] == 400


async def test_missing_access_token():
    client = make_client(access_token="")
    with patch.object(client, "_request", AsyncMock()) as request:
        with pytest.raises(UpstreamError):
            await client.fetch_lead("lead-123")
    request.assert_not_awaited()
