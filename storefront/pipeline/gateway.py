"""
Payment Gateway Client
======================
Outbound calls to the Razorpay REST API and the GatewayOrderService that
opens a gateway order for a checkout draft.

- Bounded timeouts on every call (httpx)
- Retries with exponential backoff on timeouts, transport errors and 5xx
- Circuit breaker so a dead gateway fails fast instead of queueing requests
- Idempotency key always sent with order creation

pip install httpx structlog
"""

import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel

from storefront.logger import get_logger
from storefront.pipeline.errors import (
    GatewayAmountMismatchError,
    GatewayRequestError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidOrderAmountError,
)
from storefront.schemas.orders import GatewayOrder, GatewayPayment


class GatewayRefund(BaseModel):
    id: str
    payment_id: str
    amount: int
    status: str = "processed"


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Opens after consecutive failures; lets one trial call through after a cool-down."""

    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: float = 30.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self._logger = get_logger("circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - (self._opened_at or 0.0)
                if elapsed >= self.reset_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._logger.info("circuit_half_open", elapsed=round(elapsed, 2))
                    return True
                return False
            return True

    async def record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Optional[Exception] = None) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    self._logger.warning("circuit_opened", failures=self._failures, error=str(error))
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()


# =============================================================================
# CLIENT INTERFACE
# =============================================================================

class PaymentGatewayClient(ABC):
    """What the checkout core needs from a payment gateway."""

    @abstractmethod
    async def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str,
        notes: Dict[str, str],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        pass

    @abstractmethod
    async def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        pass

    @abstractmethod
    async def refund_payment(self, payment_id: str, amount: int, reason: str) -> GatewayRefund:
        pass

    async def close(self) -> None:
        return None


class RazorpayClient(PaymentGatewayClient):
    """Razorpay REST v1 over httpx with retries and a circuit breaker."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._breaker = breaker or CircuitBreaker("razorpay")
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        self._logger = get_logger("gateway_client")

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "RazorpayClient":
        return cls(
            key_id=settings.gateway_key_id,
            key_secret=settings.gateway_key_secret,
            base_url=settings.gateway_api_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            backoff_seconds=settings.gateway_backoff_seconds,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not await self._breaker.can_execute():
            raise GatewayUnavailableError("Gateway circuit is open", path=path)

        last_error: Optional[GatewayUnavailableError] = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))
            try:
                response = await self._client.request(method, path.lstrip("/"), json=json, headers=headers)
            except httpx.TimeoutException as e:
                last_error = GatewayTimeoutError(f"Gateway timed out: {e}", path=path)
            except httpx.TransportError as e:
                last_error = GatewayUnavailableError(f"Gateway unreachable: {e}", path=path)
            else:
                if response.status_code < 400:
                    await self._breaker.record_success()
                    return response.json()
                description = self._error_description(response)
                if response.status_code in (401, 403):
                    await self._breaker.record_failure()
                    self._logger.error("gateway_auth_failed", path=path, status=response.status_code)
                    raise GatewayUnavailableError(f"Gateway rejected credentials: {description}", path=path)
                if response.status_code not in self.RETRYABLE_STATUS:
                    raise GatewayRequestError(description, path=path, status=response.status_code)
                last_error = GatewayUnavailableError(
                    f"Gateway error {response.status_code}: {description}", path=path
                )

            self._logger.warning(
                "gateway_request_retry",
                method=method,
                path=path,
                attempt=attempt + 1,
                max_attempts=self.max_retries + 1,
                error=str(last_error),
            )

        await self._breaker.record_failure(last_error)
        raise last_error

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        error = body.get("error") or {}
        return error.get("description") or error.get("code") or str(body)[:200]

    async def create_order(self, amount_minor_units, currency, receipt, notes, idempotency_key):
        return await self._request(
            "POST",
            "/orders",
            json={
                "amount": amount_minor_units,
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
                "payment_capture": 1,
            },
            headers={"Idempotency-Key": idempotency_key},
        )

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{payment_id}")
        return GatewayPayment.model_validate(data)

    async def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        data = await self._request("GET", f"/orders/{order_id}/payments")
        return [GatewayPayment.model_validate(item) for item in data.get("items", [])]

    async def refund_payment(self, payment_id: str, amount: int, reason: str) -> GatewayRefund:
        data = await self._request(
            "POST",
            f"/payments/{payment_id}/refund",
            json={"amount": amount, "notes": {"reason": reason}},
        )
        return GatewayRefund.model_validate(data)


# =============================================================================
# GATEWAY ORDER SERVICE
# =============================================================================

class GatewayOrderService:
    """Registers a payment intent for a draft's total with the gateway."""

    def __init__(self, client: PaymentGatewayClient):
        self.client = client
        self._logger = get_logger("gateway_orders")

    async def create_gateway_order(
        self,
        amount_minor_units: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayOrder:
        if amount_minor_units <= 0:
            raise InvalidOrderAmountError(
                f"Gateway order amount must be positive, got {amount_minor_units}",
                draft_id=idempotency_key,
            )

        notes = {str(k): str(v) for k, v in (metadata or {}).items()}
        log = self._logger.bind(receipt=idempotency_key)
        log.info("gateway_order_requested", amount=amount_minor_units, currency=currency)

        data = await self.client.create_order(
            amount_minor_units=amount_minor_units,
            currency=currency,
            receipt=idempotency_key,
            notes=notes,
            idempotency_key=idempotency_key,
        )

        confirmed_amount = data.get("amount")
        confirmed_currency = data.get("currency")
        if confirmed_amount != amount_minor_units or confirmed_currency != currency:
            log.error(
                "gateway_amount_mismatch",
                requested_amount=amount_minor_units,
                confirmed_amount=confirmed_amount,
                requested_currency=currency,
                confirmed_currency=confirmed_currency,
                gateway_order_id=data.get("id"),
            )
            raise GatewayAmountMismatchError(
                f"Gateway confirmed {confirmed_amount} {confirmed_currency}, "
                f"requested {amount_minor_units} {currency}",
                gateway_order_id=data.get("id"),
            )

        order = GatewayOrder(
            gateway_order_id=data["id"],
            amount_minor_units=confirmed_amount,
            currency=confirmed_currency,
            draft_id=idempotency_key,
            receipt=data.get("receipt") or idempotency_key,
            status=data.get("status", "created"),
        )
        log.info("gateway_order_created", gateway_order_id=order.gateway_order_id)
        return order
