"""Tests for the settlement backends."""

import json
from decimal import Decimal

import httpx
import pytest

from milestone_engine.core.config import Settings
from milestone_engine.core.exceptions import SettlementTransient
from milestone_engine.integrations.settlement import (
    HttpSettlementBackend,
    InMemorySettlementBackend,
    get_settlement_backend,
)

pytestmark = pytest.mark.unit

BASE_URL = "https://payouts.example.test"


def _backend(handler) -> HttpSettlementBackend:
    return HttpSettlementBackend(BASE_URL, "sk_test_123", timeout=1.0, transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# HttpSettlementBackend
# ---------------------------------------------------------------------------


async def test_successful_payout_sends_key_and_amount():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"reference": "po_881", "status": "paid"})

    result = await _backend(handler).settle(Decimal("150.00"), "tailor-kofi", "txn-abc")

    assert result.success is True
    assert result.reference == "po_881"

    request = seen[0]
    assert request.method == "POST"
    assert request.url == httpx.URL(f"{BASE_URL}/v1/payouts")
    assert request.headers["Idempotency-Key"] == "txn-abc"
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert json.loads(request.content) == {"amount": "150.00", "currency": "GHS", "payee_id": "tailor-kofi"}


async def test_client_error_is_definitive_failure():
    def handler(request):
        return httpx.Response(422, json={"reason": "payee mobile money wallet inactive"})

    result = await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")

    assert result.success is False
    assert result.reason == "payee mobile money wallet inactive"


async def test_client_error_without_json_uses_body_text():
    def handler(request):
        return httpx.Response(400, text="bad payee")

    result = await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")

    assert result.reason == "bad payee"


@pytest.mark.parametrize("status_code", [429, 500, 502, 503])
async def test_server_errors_are_transient(status_code):
    def handler(request):
        return httpx.Response(status_code)

    with pytest.raises(SettlementTransient):
        await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")


async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(SettlementTransient, match="timed out"):
        await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")


async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SettlementTransient):
        await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")


async def test_success_without_reference_is_transient():
    """Money may have moved; the row stays PROCESSING for reconciliation."""

    def handler(request):
        return httpx.Response(200, json={"status": "accepted"})

    with pytest.raises(SettlementTransient):
        await _backend(handler).settle(Decimal("10"), "tailor-kofi", "txn-1")


# ---------------------------------------------------------------------------
# InMemorySettlementBackend
# ---------------------------------------------------------------------------


async def test_in_memory_replays_result_for_same_key():
    backend = InMemorySettlementBackend()

    first = await backend.settle(Decimal("150.00"), "tailor-kofi", "txn-1")
    second = await backend.settle(Decimal("150.00"), "tailor-kofi", "txn-1")

    assert first == second
    assert len(backend.calls) == 2
    assert backend.settled_total == Decimal("300.00")  # both calls carry the settled key


async def test_in_memory_failure_mode():
    backend = InMemorySettlementBackend(fail_reason="limit exceeded")

    result = await backend.settle(Decimal("5"), "tailor-kofi", "txn-9")

    assert result.success is False
    assert result.reason == "limit exceeded"
    assert backend.settled_total == Decimal("0")


async def test_in_memory_transient_mode():
    with pytest.raises(SettlementTransient):
        await InMemorySettlementBackend(transient=True).settle(Decimal("5"), "tailor-kofi", "txn-9")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_factory_picks_http_when_configured():
    settings = Settings(_env_file=None, settlement_base_url=BASE_URL, settlement_api_key="k")
    backend = get_settlement_backend(settings)
    assert isinstance(backend, HttpSettlementBackend)
    assert backend.base_url == BASE_URL


def test_factory_falls_back_to_in_memory():
    assert isinstance(get_settlement_backend(Settings(_env_file=None)), InMemorySettlementBackend)
