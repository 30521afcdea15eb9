"""Settlement backend adapters. All escrowed money moves through one of these.

HttpSettlementBackend talks to the payment gateway's payout API.
InMemorySettlementBackend is a deterministic stand-in for tests and local runs.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

import httpx
import structlog

from milestone_engine.core.config import Settings
from milestone_engine.core.exceptions import SettlementTransient

logger = structlog.get_logger(__name__)

CURRENCY = "GHS"


@dataclass(frozen=True)
class SettlementResult:
    """Definitive answer from the backend: success with a reference, or failure with a reason."""

    success: bool
    reference: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, reference: str) -> "SettlementResult":
        return cls(success=True, reference=reference)

    @classmethod
    def failure(cls, reason: str) -> "SettlementResult":
        return cls(success=False, reason=reason)


class SettlementBackend(Protocol):
    async def settle(self, amount: Decimal, payee_id: str, idempotency_key: str) -> SettlementResult:
        """Pay ``amount`` to ``payee_id``.

        Raises:
            SettlementTransient: when the outcome is unknown (network error, timeout, 5xx)
        """
        ...


class HttpSettlementBackend:
    """Payout client for the payment gateway.

    The idempotency key travels in the ``Idempotency-Key`` header so a
    gateway-side retry of the same payout is a no-op.
    """

    PAYOUTS_PATH = "/v1/payouts"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def settle(self, amount: Decimal, payee_id: str, idempotency_key: str) -> SettlementResult:
        log = logger.bind(payee_id=payee_id, idempotency_key=idempotency_key)
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self.PAYOUTS_PATH,
                    json={"amount": str(amount), "currency": CURRENCY, "payee_id": payee_id},
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                )
        except httpx.TimeoutException as exc:
            log.warning("settlement_request_timeout")
            raise SettlementTransient(f"Settlement request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            log.warning("settlement_request_failed", error=str(exc), error_type=type(exc).__name__)
            raise SettlementTransient(f"Settlement request failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            log.warning("settlement_backend_unavailable", status_code=response.status_code)
            raise SettlementTransient(f"Settlement backend returned {response.status_code}")

        body = _json_or_empty(response)
        if response.status_code >= 400:
            reason = body.get("reason") or body.get("error") or response.text or f"HTTP {response.status_code}"
            log.warning("settlement_rejected", status_code=response.status_code, reason=reason)
            return SettlementResult.failure(str(reason))

        reference = body.get("reference") or body.get("id")
        if not reference:
            raise SettlementTransient("Settlement response missing payout reference")
        return SettlementResult.ok(str(reference))


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class SettlementCall:
    amount: Decimal
    payee_id: str
    idempotency_key: str


@dataclass
class InMemorySettlementBackend:
    """Records payouts in memory. Replays the original result for a repeated idempotency key.

    Args:
        fail_reason: if set, every new payout is refused with this reason
        transient: if True, every call raises SettlementTransient
        delay: seconds to sleep before answering (to exercise timeouts)
    """

    fail_reason: str | None = None
    transient: bool = False
    delay: float = 0.0
    calls: list[SettlementCall] = field(default_factory=list)
    _results: dict[str, SettlementResult] = field(default_factory=dict)

    async def settle(self, amount: Decimal, payee_id: str, idempotency_key: str) -> SettlementResult:
        self.calls.append(SettlementCall(amount, payee_id, idempotency_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.transient:
            raise SettlementTransient("Settlement backend unavailable")
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        if self.fail_reason:
            result = SettlementResult.failure(self.fail_reason)
        else:
            result = SettlementResult.ok(f"stl_{idempotency_key.replace('-', '')[:12]}")
        self._results[idempotency_key] = result
        return result

    @property
    def settled_total(self) -> Decimal:
        return sum(
            (c.amount for c in self.calls if self._results.get(c.idempotency_key, SettlementResult(False)).success),
            Decimal("0"),
        )


def get_settlement_backend(settings: Settings) -> SettlementBackend:
    """HTTP backend when a gateway URL is configured, in-memory otherwise."""
    if settings.settlement_base_url:
        return HttpSettlementBackend(
            base_url=settings.settlement_base_url,
            api_key=settings.settlement_api_key,
            timeout=settings.settlement_timeout_seconds,
        )
    logger.warning("settlement_backend_in_memory", reason="settlement_base_url not configured")
    return InMemorySettlementBackend()
