"""
Payment state machine for STK push transactions.

Pending -> Success | Failed, each transition exactly once. The checkout
request ID issued by the provider is the only idempotency key: a callback
is applied through one conditional UPDATE, so concurrent deliveries of the
same webhook cannot both observe Pending.
"""
import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hotspot_bridge.config import Settings, get_settings
from hotspot_bridge.core.errors import (
    DuplicateCallbackError,
    GatewayUnavailableError,
    InvalidInputError,
    UnknownCorrelationError,
)
from hotspot_bridge.core.phone import normalize_phone
from hotspot_bridge.database.models import TransactionStatus
from hotspot_bridge.database.repository import TransactionStore
from hotspot_bridge.integrations.daraja_client import GatewayError, PaymentGateway
from hotspot_bridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUCCESS_RESULT_CODE = 0
RECEIPT_FIELD = "MpesaReceiptNumber"
PAYER_NAME_FIELDS = ("FirstName", "MiddleName", "LastName")
RECORD_SEPARATORS = (",", "\r", "\n")


@dataclass(frozen=True)
class TerminalEvent:
    """Outcome of a callback that moved a transaction out of Pending."""

    status: TransactionStatus
    checkout_request_id: str
    phone: Optional[str] = None
    plan: Optional[str] = None
    receipt: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is TransactionStatus.SUCCESS


@dataclass(frozen=True)
class PaymentStatus:
    """Customer-facing view of a transaction."""

    paid: bool
    plan: Optional[str] = None


def extract_payer_name(metadata: Dict[str, Any]) -> Optional[str]:
    parts = [str(metadata[field]).strip() for field in PAYER_NAME_FIELDS if metadata.get(field)]
    parts = [part for part in parts if part]
    return " ".join(parts) if parts else None


class PaymentStateMachine:
    """Initiates STK pushes and applies their asynchronous results."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: Optional[TransactionStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.store = store or TransactionStore()
        self.settings = settings or get_settings()

    @staticmethod
    def validate_plan(plan: Optional[str]) -> str:
        """
        Check a plan identifier and return it stripped.

        The plan travels to the access controller inside an `identity,plan`
        line, so it may not contain the field or line separators.

        Raises:
            InvalidInputError: If the plan is empty or contains a separator
        """
        if not plan or not str(plan).strip():
            raise InvalidInputError("Plan is required")
        plan = str(plan).strip()
        if any(separator in plan for separator in RECORD_SEPARATORS):
            raise InvalidInputError("Plan may not contain commas or line breaks")
        return plan

    @staticmethod
    def validate_request(phone: Optional[str], plan: Optional[str], amount: Any) -> None:
        """
        Validate an initiation request before anything external is called.

        Raises:
            InvalidInputError: If validation fails
        """
        if not phone or not str(phone).strip():
            raise InvalidInputError("Phone number is required")
        PaymentStateMachine.validate_plan(plan)
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise InvalidInputError("Amount must be a number")
        if not math.isfinite(amount):
            raise InvalidInputError("Amount must be a finite number")
        if amount <= 0:
            raise InvalidInputError("Amount must be positive")
        if amount != int(amount):
            raise InvalidInputError("Amount must be a whole number of shillings")

    async def initiate(self, db: AsyncSession, phone: str, plan: str, amount: int) -> str:
        """
        Send an STK push and record the Pending transaction.

        The record is only written once the provider has accepted the push, so
        a failed or timed-out call leaves nothing behind.

        Args:
            db: Database session
            phone: Raw phone number as typed by the customer
            plan: Plan identifier
            amount: Price in whole shillings

        Returns:
            str: The provider's checkout request ID

        Raises:
            InvalidInputError: If the request is malformed
            GatewayUnavailableError: If the provider call failed or timed out
        """
        self.validate_request(phone, plan, amount)
        msisdn = normalize_phone(phone, self.settings.country_prefix)
        plan = plan.strip()
        amount = int(amount)

        start_time = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.gateway.stk_push(msisdn, amount, plan),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "stk_push_timed_out",
                phone=msisdn,
                timeout_seconds=self.settings.gateway_timeout_seconds,
            )
            raise GatewayUnavailableError("Payment provider timed out")
        except GatewayError as e:
            raise GatewayUnavailableError(f"Payment provider unavailable: {e}") from e
        finally:
            metrics.record_gateway_duration(time.monotonic() - start_time)

        try:
            await self.store.create_pending(
                db,
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
                phone_number=msisdn,
                amount=amount,
                plan=plan,
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            # The push already reached the customer; support needs this ID
            # to reconcile the orphaned payment by hand.
            logger.error(
                "transaction_persist_failed",
                checkout_request_id=result.checkout_request_id,
                phone=msisdn,
                plan=plan,
                error=str(e),
            )
            raise

        logger.info(
            "transaction_initiated",
            checkout_request_id=result.checkout_request_id,
            phone=msisdn,
            plan=plan,
            amount=amount,
        )
        return result.checkout_request_id

    async def apply_callback(
        self,
        db: AsyncSession,
        checkout_request_id: str,
        result_code: int,
        metadata: Optional[Dict[str, Any]] = None,
        result_desc: Optional[str] = None,
        before_commit: Optional[Callable[[TerminalEvent], Awaitable[None]]] = None,
    ) -> TerminalEvent:
        """
        Apply a provider callback to its transaction.

        Args:
            db: Database session
            checkout_request_id: Correlation token from the callback
            result_code: 0 for a completed payment, anything else for failure
            metadata: Callback metadata items flattened to name -> value
            result_desc: Provider's description of the outcome
            before_commit: Awaited with the event while the transition is
                still uncommitted; if it raises, the transaction stays Pending

        Returns:
            TerminalEvent: The transition this call performed

        Raises:
            UnknownCorrelationError: If no transaction has this token
            DuplicateCallbackError: If the transaction already left Pending
        """
        metadata = metadata or {}
        if result_code == SUCCESS_RESULT_CODE:
            status = TransactionStatus.SUCCESS
            receipt = str(metadata.get(RECEIPT_FIELD) or "")
            payer_name = extract_payer_name(metadata)
        else:
            status = TransactionStatus.FAILED
            receipt = None
            payer_name = None

        transitioned = await self.store.transition(
            db,
            checkout_request_id,
            status,
            mpesa_receipt=receipt,
            payer_name=payer_name,
            result_desc=result_desc,
        )
        transaction = await self.store.get(db, checkout_request_id)

        if not transitioned:
            # Rollback expires loaded instances; read what we need first.
            current_status = transaction.status if transaction is not None else None
            await db.rollback()
            if current_status is None:
                raise UnknownCorrelationError(checkout_request_id)
            raise DuplicateCallbackError(checkout_request_id, current_status)

        if status is TransactionStatus.FAILED:
            event = TerminalEvent(status=status, checkout_request_id=checkout_request_id)
        else:
            event = TerminalEvent(
                status=status,
                checkout_request_id=checkout_request_id,
                phone=transaction.phone_number,
                plan=transaction.plan,
                receipt=receipt,
            )

        if before_commit is not None:
            try:
                await before_commit(event)
            except Exception:
                await db.rollback()
                raise

        await db.commit()

        logger.info(
            "transaction_settled",
            checkout_request_id=checkout_request_id,
            status=status.value,
            result_code=result_code,
            receipt=receipt,
        )
        return event

    async def query_status(self, db: AsyncSession, checkout_request_id: str) -> PaymentStatus:
        """
        Report whether a transaction is paid.

        Store failures read as "not paid yet"; the browser keeps polling.
        """
        try:
            transaction = await self.store.get(db, checkout_request_id)
        except SQLAlchemyError as e:
            logger.warning(
                "status_query_failed",
                checkout_request_id=checkout_request_id,
                error=str(e),
            )
            return PaymentStatus(paid=False)

        if transaction is None or transaction.status != TransactionStatus.SUCCESS.value:
            return PaymentStatus(paid=False)
        return PaymentStatus(paid=True, plan=transaction.plan)
