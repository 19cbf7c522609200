"""
Khalti ePayment gateway client.

Amounts on the wire are integers in paisa (NPR * 100). ``lookup`` returns a
parsed status even when Khalti answers 400, which it does for expired,
cancelled and unknown payments.
"""
import asyncio
import enum
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import gateway_lookup_duration_seconds
from backend.app.core.settings import Settings, get_settings

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GatewayError(ServiceError):
    """Base exception for payment gateway failures. Always transient from our side."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message, status_code)


class GatewayUnavailableError(GatewayError):
    pass


class GatewayTimeoutError(GatewayError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"Payment gateway {operation} timed out after {timeout}s", 504)


class PaymentNotConfiguredError(GatewayError):
    def __init__(self):
        super().__init__("Payment system is not configured", 503)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class GatewayPaymentStatus(str, enum.Enum):
    COMPLETED = "Completed"
    PENDING = "Pending"
    INITIATED = "Initiated"
    EXPIRED = "Expired"
    USER_CANCELED = "User canceled"
    REFUNDED = "Refunded"
    PARTIALLY_REFUNDED = "Partially Refunded"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GatewayPaymentStatus":
        if not raw:
            return cls.UNKNOWN
        normalized = raw.strip().lower().replace("_", " ")
        if normalized in ("usercanceled", "user cancelled"):
            normalized = "user canceled"
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return cls.UNKNOWN

    @property
    def is_terminal_failure(self) -> bool:
        return self in (GatewayPaymentStatus.EXPIRED, GatewayPaymentStatus.USER_CANCELED)


class CustomerInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class InitiateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pidx: str
    payment_url: str
    expires_at: Optional[str] = None
    expires_in: Optional[int] = None


class LookupResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    pidx: str = ""
    total_amount: int = 0
    status: str = ""
    transaction_id: Optional[str] = None
    fee: int = 0
    refunded: bool = False

    @property
    def payment_status(self) -> GatewayPaymentStatus:
        return GatewayPaymentStatus.parse(self.status)


def to_paisa(amount: Any) -> int:
    """Major currency units -> integer paisa."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paisa(amount: int) -> Decimal:
    return Decimal(amount) / Decimal(100)


class PaymentGateway(Protocol):
    async def initiate(
        self,
        order_ref: str,
        amount: int,
        return_url: str,
        customer: CustomerInfo,
        order_name: str = "Order Payment",
    ) -> InitiateResponse: ...

    async def lookup(self, pidx: str) -> LookupResponse: ...


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class KhaltiClient:
    """Thin async client over Khalti's ``initiate/`` and ``lookup/`` endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.settings.khalti_configured:
            raise PaymentNotConfiguredError()
        base_url = self.settings.KHALTI_BASE_URL
        if not base_url.endswith("/"):
            base_url += "/"
        return httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Key {self.settings.KHALTI_SECRET_KEY}",
                "Content-Type": "application/json",
            },
            timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            logger.error("Khalti request timed out", operation=operation, error=str(exc))
            raise GatewayTimeoutError(operation, self.settings.GATEWAY_TIMEOUT_SECONDS) from exc
        except httpx.HTTPError as exc:
            logger.error("Khalti request failed", operation=operation, error=str(exc))
            raise GatewayUnavailableError(f"Payment gateway {operation} failed: {exc}") from exc

    async def initiate(
        self,
        order_ref: str,
        amount: int,
        return_url: str,
        customer: CustomerInfo,
        order_name: str = "Order Payment",
    ) -> InitiateResponse:
        payload = {
            "return_url": return_url,
            "website_url": self.settings.KHALTI_WEBSITE_URL or return_url,
            "amount": amount,
            "purchase_order_id": order_ref,
            "purchase_order_name": order_name,
            "customer_info": customer.model_dump(),
        }
        logger.info("Initiating Khalti payment", order_ref=order_ref, amount=amount)
        response = await self._post("initiate", "initiate/", payload)

        if response.is_error:
            logger.error(
                "Khalti initiate failed",
                order_ref=order_ref,
                status_code=response.status_code,
                body=response.text,
            )
            raise GatewayUnavailableError(f"Khalti initiate failed: {response.status_code}")

        try:
            result = InitiateResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise GatewayUnavailableError(f"Malformed Khalti initiate response: {exc}") from exc

        logger.info("Khalti payment initiated", order_ref=order_ref, pidx=result.pidx)
        return result

    async def lookup(self, pidx: str) -> LookupResponse:
        response = await self._post("lookup", "lookup/", {"pidx": pidx})

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            # Expired / canceled / not found come back as 400 with a normal lookup body
            if isinstance(body, dict) and body.get("status"):
                result = LookupResponse.model_validate(body)
                logger.warning(
                    "Khalti lookup returned error code with a status",
                    pidx=pidx,
                    status_code=response.status_code,
                    status=result.status,
                )
                return result
            logger.error(
                "Khalti lookup failed",
                pidx=pidx,
                status_code=response.status_code,
                body=response.text,
            )
            raise GatewayUnavailableError(f"Khalti lookup failed: {response.status_code}")

        if not isinstance(body, dict):
            raise GatewayUnavailableError("Malformed Khalti lookup response")
        try:
            result = LookupResponse.model_validate(body)
        except ValidationError as exc:
            raise GatewayUnavailableError(f"Malformed Khalti lookup response: {exc}") from exc

        logger.info(
            "Khalti lookup succeeded",
            pidx=pidx,
            status=result.status,
            total_amount=result.total_amount,
        )
        return result


async def lookup_with_timeout(gateway: PaymentGateway, pidx: str, timeout: float) -> LookupResponse:
    """Gateway lookup bounded by ``timeout`` whatever the client's own limits are."""
    started = time.perf_counter()
    try:
        return await asyncio.wait_for(gateway.lookup(pidx), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("Payment lookup timed out", pidx=pidx, timeout=timeout)
        raise GatewayTimeoutError("lookup", timeout) from exc
    finally:
        gateway_lookup_duration_seconds.observe(time.perf_counter() - started)
