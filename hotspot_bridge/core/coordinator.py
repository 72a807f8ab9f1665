"""
Access handoff coordinator.

Turns settled payments and redeemed vouchers into pull queue entries and
serves the access controller's polls.
"""
import secrets
import string
import time
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from hotspot_bridge.core.errors import (
    CallbackIgnoredError,
    DuplicateCallbackError,
    InvalidInputError,
    InvalidOrUsedVoucherError,
)
from hotspot_bridge.core.phone import normalize_phone
from hotspot_bridge.core.pull_queue import EMPTY_ENTRY, PullQueue, QueueEntry
from hotspot_bridge.core.state_machine import PaymentStateMachine, PaymentStatus, TerminalEvent
from hotspot_bridge.database.models import Transaction, Voucher
from hotspot_bridge.database.repository import VoucherStore
from hotspot_bridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

VOUCHER_ALPHABET = string.ascii_uppercase + string.digits
VOUCHER_CODE_LENGTH = 8


def generate_voucher_code(length: int = VOUCHER_CODE_LENGTH) -> str:
    return "".join(secrets.choice(VOUCHER_ALPHABET) for _ in range(length))


class AccessHandoffCoordinator:
    """Bridges payment and voucher outcomes to the pull queue."""

    def __init__(
        self,
        state_machine: PaymentStateMachine,
        pull_queue: PullQueue,
        voucher_store: Optional[VoucherStore] = None,
    ):
        self.state_machine = state_machine
        self.pull_queue = pull_queue
        self.voucher_store = voucher_store or VoucherStore()

    async def initiate_purchase(self, db: AsyncSession, phone: str, plan: str, amount: int) -> str:
        return await self.state_machine.initiate(db, phone, plan, amount)

    async def payment_status(self, db: AsyncSession, checkout_request_id: str) -> PaymentStatus:
        return await self.state_machine.query_status(db, checkout_request_id)

    async def handle_callback(
        self,
        db: AsyncSession,
        checkout_request_id: str,
        result_code: int,
        metadata: Optional[Dict[str, Any]] = None,
        result_desc: Optional[str] = None,
    ) -> str:
        """
        Process a provider callback and report its outcome.

        Unknown and duplicate tokens are logged and reported, never raised:
        the caller acknowledges every callback that reaches this point.
        The queue entry is written before the Success transition commits, so
        a failed enqueue leaves the transaction Pending and propagates along
        with store errors; the provider then redelivers.

        Returns:
            str: One of "success", "failed", "duplicate", "unknown"
        """
        start_time = time.monotonic()
        try:
            event = await self.state_machine.apply_callback(
                db,
                checkout_request_id,
                result_code,
                metadata,
                result_desc,
                before_commit=self.on_terminal_event,
            )
        except CallbackIgnoredError as e:
            outcome = "duplicate" if isinstance(e, DuplicateCallbackError) else "unknown"
            logger.warning(
                f"callback_{outcome}",
                checkout_request_id=checkout_request_id,
                result_code=result_code,
                reason=str(e),
            )
            metrics.record_callback(outcome, time.monotonic() - start_time)
            return outcome
        except Exception:
            metrics.record_callback("error", time.monotonic() - start_time)
            raise

        await self._refresh_depth()
        outcome = "success" if event.succeeded else "failed"
        metrics.record_callback(outcome, time.monotonic() - start_time)
        return outcome

    async def on_terminal_event(self, event: TerminalEvent) -> None:
        """
        Enqueue the customer of a successful payment.

        Raises whatever the queue backend raises; the payment is then not
        settled and the callback will be redelivered.
        """
        if not event.succeeded:
            return
        entry = QueueEntry(phone=event.phone, plan=event.plan)
        try:
            await self.pull_queue.enqueue(entry)
        except Exception as e:
            logger.error(
                "access_handoff_failed",
                checkout_request_id=event.checkout_request_id,
                phone=entry.phone,
                plan=entry.plan,
                receipt=event.receipt,
                error=str(e),
            )
            raise
        logger.info(
            "access_handoff_enqueued",
            checkout_request_id=event.checkout_request_id,
            phone=entry.phone,
            plan=entry.plan,
        )

    async def pull_next(self) -> QueueEntry:
        """
        Pop the next approved customer for the access controller.

        Returns:
            QueueEntry: The head of the queue, or EMPTY_ENTRY when there is
            no work or the queue backend is unreachable
        """
        try:
            entry = await self.pull_queue.try_pop()
        except Exception as e:
            logger.error("pull_queue_pop_failed", error=str(e))
            metrics.record_poll("error")
            return EMPTY_ENTRY

        if entry is None:
            metrics.record_poll("empty")
            return EMPTY_ENTRY

        metrics.record_poll("entry")
        logger.info("access_handoff_delivered", phone=entry.phone, plan=entry.plan)
        await self._refresh_depth()
        return entry

    async def queue_snapshot(self) -> List[QueueEntry]:
        return await self.pull_queue.peek_all()

    async def redeem_voucher(self, db: AsyncSession, code: str, phone: str) -> QueueEntry:
        """
        Redeem a voucher and enqueue its holder.

        Args:
            db: Database session
            code: Voucher code, case-insensitive
            phone: Raw phone number of the redeemer

        Returns:
            QueueEntry: The entry placed on the pull queue

        Raises:
            InvalidInputError: If code or phone is empty
            InvalidOrUsedVoucherError: If the code does not exist or was used
        """
        code = (code or "").strip().upper()
        if not code:
            raise InvalidInputError("Voucher code is required")
        msisdn = normalize_phone(phone, self.state_machine.settings.country_prefix)

        voucher = await self.voucher_store.claim(db, code, msisdn)
        if voucher is None:
            await db.rollback()
            metrics.record_voucher_redemption("rejected")
            logger.warning("voucher_rejected", code=code, phone=msisdn)
            raise InvalidOrUsedVoucherError("Invalid or used voucher")
        await db.commit()

        entry = QueueEntry(phone=msisdn, plan=voucher.plan)
        try:
            await self.pull_queue.enqueue(entry)
        except Exception as e:
            await self.voucher_store.release(db, code, msisdn)
            await db.commit()
            metrics.record_voucher_redemption("released")
            logger.error("voucher_enqueue_failed", code=code, phone=msisdn, error=str(e))
            raise

        metrics.record_voucher_redemption("redeemed")
        logger.info("voucher_redeemed", code=code, phone=msisdn, plan=voucher.plan)
        await self._refresh_depth()
        return entry

    async def issue_voucher(
        self,
        db: AsyncSession,
        plan: str,
        amount: int = 0,
        agent: Optional[str] = None,
        code: Optional[str] = None,
    ) -> Voucher:
        plan = self.state_machine.validate_plan(plan)
        code = (code or generate_voucher_code()).strip().upper()
        voucher = await self.voucher_store.create(db, code, plan, amount, agent)
        await db.commit()
        logger.info("voucher_issued", code=code, plan=voucher.plan, agent=agent)
        return voucher

    async def list_vouchers(self, db: AsyncSession, used: Optional[bool] = None) -> List[Voucher]:
        return await self.voucher_store.list_vouchers(db, used=used)

    async def sales(self, db: AsyncSession, limit: int = 100) -> List[Transaction]:
        return await self.state_machine.store.list_successful(db, limit=limit)

    async def _refresh_depth(self) -> None:
        try:
            metrics.set_queue_depth(await self.pull_queue.size())
        except Exception as e:
            logger.warning("pull_queue_depth_unavailable", error=str(e))
