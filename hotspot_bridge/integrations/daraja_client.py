"""
M-Pesa Daraja API client for Lipa Na M-Pesa Online (STK push).

Implements:
- OAuth client-credentials token with caching and retry
- STK push request construction
- Circuit breaker around provider calls
- Error classification for the caller
"""
import base64
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hotspot_bridge.config import Settings, get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"


class GatewayErrorType(Enum):
    """Classification of provider failures."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"  # Connection errors and 5xx
    REJECTED = "rejected"  # Provider answered but refused the request
    CIRCUIT_OPEN = "circuit_open"


class GatewayError(Exception):
    """Base exception for provider-related errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


@dataclass
class StkPushResult:
    """Provider acknowledgment of an accepted STK push."""

    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    response_description: Optional[str] = None
    customer_message: Optional[str] = None


def parse_json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
    """
    Decode a provider response body that must be a JSON object.

    Raises:
        GatewayError: If the body is not JSON or not an object
    """
    try:
        data = response.json()
    except ValueError:
        raise GatewayError(
            f"Non-JSON {what} response from provider (status={response.status_code})",
            GatewayErrorType.REJECTED,
        )
    if not isinstance(data, dict):
        raise GatewayError(
            f"Unexpected {what} response shape from provider (status={response.status_code})",
            GatewayErrorType.REJECTED,
        )
    return data


class PaymentGateway(ABC):
    """Push-payment provider contract used by the state machine."""

    @abstractmethod
    async def stk_push(self, phone: str, amount: int, plan: str) -> StkPushResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class CircuitBreaker:
    """
    Circuit breaker for provider calls.

    Prevents piling requests onto a provider that is already failing by
    refusing calls for `timeout` seconds once `failure_threshold`
    consecutive failures were seen.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 1,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await `func` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.CIRCUIT_OPEN)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class DarajaClient(PaymentGateway):
    """
    Wrapper for the Daraja STK push API.

    The OAuth token is fetched with retries since it is idempotent. The STK
    push itself is sent once: a retry could prompt the customer twice.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.daraja_base_url
        self._http_client = http_client
        self._owns_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.settings.gateway_failure_threshold,
            timeout=self.settings.gateway_reset_timeout,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

        logger.info("daraja_client_initialized", env=self.settings.daraja_env)

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def timestamp(now: Optional[datetime] = None) -> str:
        return (now or datetime.now()).strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.settings.daraja_shortcode}{self.settings.daraja_passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _fetch_token(self) -> Dict[str, Any]:
        response = await self._get_client().get(
            f"{self.base_url}{TOKEN_PATH}",
            auth=(self.settings.daraja_consumer_key, self.settings.daraja_consumer_secret),
        )
        response.raise_for_status()
        return parse_json_object(response, "token")

    async def access_token(self) -> str:
        """Return a cached OAuth token, refreshing it a minute before expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        data = await self._fetch_token()
        token = data.get("access_token")
        if not token:
            raise GatewayError("Token response carried no access_token", GatewayErrorType.REJECTED)
        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        logger.info("daraja_token_refreshed", expires_in=expires_in)
        return token

    def build_stk_payload(self, phone: str, amount: int, plan: str, timestamp: str) -> Dict[str, Any]:
        shortcode = self.settings.daraja_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.daraja_transaction_type,
            "Amount": int(amount),
            "PartyA": phone,
            "PartyB": shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.daraja_callback_url,
            "AccountReference": self.settings.daraja_account_reference,
            "TransactionDesc": f"WiFi {plan}",
        }

    async def _stk_push(self, phone: str, amount: int, plan: str) -> StkPushResult:
        token = await self.access_token()
        payload = self.build_stk_payload(phone, amount, plan, self.timestamp())
        response = await self._get_client().post(
            f"{self.base_url}{STK_PUSH_PATH}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 401:
            # Token revoked early; the next call fetches a fresh one.
            self._token = None
        if response.status_code >= 500:
            response.raise_for_status()

        data = parse_json_object(response, "STK push")

        checkout_request_id = data.get("CheckoutRequestID")
        if response.status_code >= 400 or str(data.get("ResponseCode", "")) != "0" or not checkout_request_id:
            message = data.get("errorMessage") or data.get("ResponseDescription") or "STK push rejected"
            raise GatewayError(message, GatewayErrorType.REJECTED)

        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    async def stk_push(self, phone: str, amount: int, plan: str) -> StkPushResult:
        """
        Send an STK push prompt to `phone`.

        Args:
            phone: Normalized MSISDN (2547XXXXXXXX)
            amount: Whole-shilling amount
            plan: Plan identifier, shown in the transaction description

        Returns:
            StkPushResult: Provider correlation identifiers

        Raises:
            GatewayError: If the provider is unreachable, slow or refuses the request
        """
        logger.info("stk_push_requested", phone=phone, amount=amount, plan=plan)
        try:
            result = await self.circuit_breaker.call(self._stk_push, phone, amount, plan)
        except GatewayError as e:
            logger.error("stk_push_failed", error=str(e), error_type=e.error_type.value)
            raise
        except httpx.TimeoutException as e:
            logger.error("stk_push_timeout", error=str(e))
            raise GatewayError("Provider timed out", GatewayErrorType.TIMEOUT, e)
        except httpx.HTTPError as e:
            logger.error("stk_push_transport_error", error=str(e))
            raise GatewayError(f"Provider unreachable: {e}", GatewayErrorType.TRANSPORT, e)

        logger.info(
            "stk_push_accepted",
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
        )
        return result
