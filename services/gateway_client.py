"""
Gateway Clients
Opaque adapters over third-party payment processors.

The reconciliation core only sees GatewayClient: submit a payment, ask for
its status, refund it. Wire formats stay inside the concrete clients, and
every HTTP failure is mapped onto the GatewayError family:

- GatewayTransientError: timeout, connection error, rate limit, 5xx
- GatewayTerminalError: decline, invalid credentials, unknown reference
- GatewayResponseError: malformed or unexpected payload
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from config import Config

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base class for gateway failures"""

    def __init__(self, message: str, gateway: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.gateway = gateway
        self.status_code = status_code


class GatewayTransientError(GatewayError):
    """Retryable: timeout, rate limit, 5xx"""
    pass


class GatewayTerminalError(GatewayError):
    """Not retryable: decline, invalid credentials"""
    pass


class GatewayResponseError(GatewayError):
    """Malformed or unexpected gateway response"""
    pass


class GatewayStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"


@dataclass
class PaymentRequest:
    amount: Decimal
    currency: str
    customer_email: str
    description: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayStatusResult:
    status: GatewayStatus
    reference: str
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    success: bool
    reference: str
    amount: Decimal
    refund_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class GatewayClient(ABC):
    """Interface every gateway adapter implements"""

    name: str = "gateway"

    @abstractmethod
    async def submit_payment(self, request: PaymentRequest, timeout: Optional[float] = None) -> str:
        """Create the payment at the gateway and return its reference"""

    @abstractmethod
    async def get_status(self, reference: str, timeout: Optional[float] = None) -> GatewayStatusResult:
        """Fetch the live status of a payment"""

    @abstractmethod
    async def refund(self, reference: str, amount: Decimal, timeout: Optional[float] = None) -> RefundResult:
        """Refund all or part of a payment"""


class HTTPGatewayClient(GatewayClient):
    """Shared aiohttp plumbing and status-code mapping"""

    def __init__(self, base_url: str, default_timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout or Config.GATEWAY_REQUEST_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        return {"accept": "application/json"}

    async def _request(self, method: str, path: str, timeout: Optional[float] = None,
                       headers: Optional[Dict[str, str]] = None, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.default_timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.request(method, url, headers=headers or self._headers(), **kwargs) as response:
                    body = await response.text()
                    self._raise_for_status(response.status, body)
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        raise GatewayResponseError(
                            f"{self.name} returned non-JSON body", self.name, response.status
                        )
                    if not isinstance(data, dict):
                        raise GatewayResponseError(
                            f"{self.name} returned unexpected payload type", self.name, response.status
                        )
                    return data
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ GATEWAY_TIMEOUT: {self.name} {method} {path}")
            raise GatewayTransientError(f"{self.name} request timed out", self.name)
        except aiohttp.ClientError as e:
            logger.warning(f"🌐 GATEWAY_NETWORK_ERROR: {self.name} {method} {path}: {e}")
            raise GatewayTransientError(f"{self.name} network error: {e}", self.name)

    def _raise_for_status(self, status: int, body: str) -> None:
        if 200 <= status < 300:
            return
        snippet = body[:200] if body else ""
        logger.error(f"❌ GATEWAY_HTTP_{status}: {self.name}: {snippet}")
        if status == 429:
            raise GatewayTransientError(f"{self.name} rate limit exceeded", self.name, status)
        if status >= 500:
            raise GatewayTransientError(f"{self.name} unavailable (HTTP {status})", self.name, status)
        if status in (401, 403):
            raise GatewayTerminalError(f"{self.name} rejected credentials", self.name, status)
        if status in (400, 402, 404, 422):
            raise GatewayTerminalError(f"{self.name} declined the request (HTTP {status})", self.name, status)
        raise GatewayResponseError(f"{self.name} unexpected HTTP {status}", self.name, status)

    @staticmethod
    def _require(data: Dict[str, Any], key: str, gateway: str) -> Any:
        value = data.get(key)
        if value in (None, ""):
            raise GatewayResponseError(f"{gateway} response missing '{key}'", gateway)
        return value


class StripeLikeGatewayClient(HTTPGatewayClient):
    """Payment-intent style API: bearer key, form-encoded bodies, minor units"""

    name = "stripe"

    SUCCEEDED_STATES = {"succeeded"}
    FAILED_STATES = {"canceled", "requires_payment_method"}

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 default_timeout: Optional[float] = None):
        super().__init__(base_url or Config.STRIPE_BASE_URL, default_timeout)
        self.api_key = api_key or Config.STRIPE_API_KEY
        if not self.api_key:
            logger.warning("Stripe API key not configured - client will not function")

    def _headers(self) -> Dict[str, str]:
        return {"accept": "application/json", "Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def _minor_units(amount: Decimal) -> int:
        return int((Decimal(str(amount)) * 100).quantize(Decimal("1")))

    async def submit_payment(self, request: PaymentRequest, timeout: Optional[float] = None) -> str:
        form = {
            "amount": str(self._minor_units(request.amount)),
            "currency": request.currency.lower(),
            "receipt_email": request.customer_email,
        }
        if request.description:
            form["description"] = request.description
        if request.reference:
            form["metadata[reference]"] = request.reference
        data = await self._request("POST", "/payment_intents", timeout, data=form)
        reference = self._require(data, "id", self.name)
        logger.info(f"💳 STRIPE_PAYMENT_CREATED: {reference}")
        return reference

    async def get_status(self, reference: str, timeout: Optional[float] = None) -> GatewayStatusResult:
        data = await self._request("GET", f"/payment_intents/{reference}", timeout)
        state = self._require(data, "status", self.name)
        if state in self.SUCCEEDED_STATES:
            status = GatewayStatus.SUCCEEDED
        elif state in self.FAILED_STATES:
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.PROCESSING
        error = data.get("last_payment_error") or {}
        message = error.get("message") if isinstance(error, dict) else None
        return GatewayStatusResult(status=status, reference=reference, message=message or state, raw=data)

    async def refund(self, reference: str, amount: Decimal, timeout: Optional[float] = None) -> RefundResult:
        form = {"payment_intent": reference, "amount": str(self._minor_units(amount))}
        data = await self._request("POST", "/refunds", timeout, data=form)
        return RefundResult(
            success=data.get("status") in ("succeeded", "pending"),
            reference=reference,
            amount=Decimal(str(amount)),
            refund_id=data.get("id"),
            raw=data,
        )


class PayPalLikeGatewayClient(HTTPGatewayClient):
    """Orders style API: OAuth client-credentials token, JSON bodies"""

    name = "paypal"

    SUCCEEDED_STATES = {"COMPLETED"}
    FAILED_STATES = {"VOIDED", "DECLINED", "DENIED"}

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 base_url: Optional[str] = None, default_timeout: Optional[float] = None):
        super().__init__(base_url or Config.PAYPAL_BASE_URL, default_timeout)
        self.client_id = client_id or Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or Config.PAYPAL_CLIENT_SECRET
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        if not self.client_id or not self.client_secret:
            logger.warning("PayPal credentials not configured - client will not function")

    async def _token(self, timeout: Optional[float]) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token
        data = await self._request(
            "POST", "/v1/oauth2/token", timeout,
            headers={"accept": "application/json"},
            data={"grant_type": "client_credentials"},
            auth=aiohttp.BasicAuth(self.client_id or "", self.client_secret or ""),
        )
        self._access_token = self._require(data, "access_token", self.name)
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._access_token

    async def _authorized_headers(self, timeout: Optional[float]) -> Dict[str, str]:
        token = await self._token(timeout)
        return {
            "accept": "application/json",
            "content-type": "application/json",
            "Authorization": f"Bearer {token}",
        }

    async def submit_payment(self, request: PaymentRequest, timeout: Optional[float] = None) -> str:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": request.reference or "default",
                "description": request.description,
                "amount": {
                    "currency_code": request.currency.upper(),
                    "value": f"{Decimal(str(request.amount)):.2f}",
                },
            }],
            "payer": {"email_address": request.customer_email},
        }
        headers = await self._authorized_headers(timeout)
        data = await self._request("POST", "/v2/checkout/orders", timeout, headers=headers, json=payload)
        reference = self._require(data, "id", self.name)
        logger.info(f"💳 PAYPAL_ORDER_CREATED: {reference}")
        return reference

    async def get_status(self, reference: str, timeout: Optional[float] = None) -> GatewayStatusResult:
        headers = await self._authorized_headers(timeout)
        data = await self._request("GET", f"/v2/checkout/orders/{reference}", timeout, headers=headers)
        state = str(self._require(data, "status", self.name)).upper()
        if state in self.SUCCEEDED_STATES:
            status = GatewayStatus.SUCCEEDED
        elif state in self.FAILED_STATES:
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.PROCESSING
        return GatewayStatusResult(status=status, reference=reference, message=state, raw=data)

    async def refund(self, reference: str, amount: Decimal, timeout: Optional[float] = None) -> RefundResult:
        headers = await self._authorized_headers(timeout)
        data = await self._request(
            "POST", f"/v2/payments/captures/{reference}/refund", timeout, headers=headers, json={}
        )
        return RefundResult(
            success=str(data.get("status", "")).upper() in ("COMPLETED", "PENDING"),
            reference=reference,
            amount=Decimal(str(amount)),
            refund_id=data.get("id"),
            raw=data,
        )
