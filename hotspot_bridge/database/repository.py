"""
Query shapes used by the core.

Every state change here is a conditional UPDATE whose WHERE clause names
the state it expects to leave; the affected row count tells the caller
whether it won. Stores never commit: the caller owns the transaction.
"""
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hotspot_bridge.database.models import Transaction, TransactionStatus, Voucher


class TransactionStore:
    """Persistence for STK push transactions."""

    async def create_pending(
        self,
        db: AsyncSession,
        checkout_request_id: str,
        phone_number: str,
        amount: int,
        plan: str,
        merchant_request_id: Optional[str] = None,
    ) -> Transaction:
        transaction = Transaction(
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            phone_number=phone_number,
            amount=amount,
            plan=plan,
            status=TransactionStatus.PENDING.value,
        )
        db.add(transaction)
        await db.flush()
        await db.refresh(transaction)
        return transaction

    async def transition(
        self,
        db: AsyncSession,
        checkout_request_id: str,
        status: TransactionStatus,
        mpesa_receipt: Optional[str] = None,
        payer_name: Optional[str] = None,
        result_desc: Optional[str] = None,
    ) -> bool:
        """
        Move a Pending transaction to a terminal status.

        Returns:
            bool: True if this call performed the transition, False if the
            token is unknown or the transaction already left Pending
        """
        stmt = (
            update(Transaction)
            .where(
                Transaction.checkout_request_id == checkout_request_id,
                Transaction.status == TransactionStatus.PENDING.value,
            )
            .values(
                status=status.value,
                mpesa_receipt=mpesa_receipt,
                payer_name=payer_name,
                result_desc=result_desc,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def get(self, db: AsyncSession, checkout_request_id: str) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.checkout_request_id == checkout_request_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_successful(self, db: AsyncSession, limit: int = 100) -> List[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.status == TransactionStatus.SUCCESS.value)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())


class VoucherStore:
    """Persistence for pre-issued access vouchers."""

    async def create(
        self,
        db: AsyncSession,
        code: str,
        plan: str,
        amount: int = 0,
        agent: Optional[str] = None,
    ) -> Voucher:
        voucher = Voucher(code=code, plan=plan, amount=amount, agent=agent, used=False)
        db.add(voucher)
        await db.flush()
        await db.refresh(voucher)
        return voucher

    async def claim(self, db: AsyncSession, code: str, redeemed_by: str) -> Optional[Voucher]:
        """
        Mark an unused voucher as used by `redeemed_by`.

        Returns:
            Optional[Voucher]: The claimed voucher, or None if the code does
            not exist or was already used
        """
        stmt = (
            update(Voucher)
            .where(Voucher.code == code, Voucher.used.is_(False))
            .values(used=True, redeemed_by=redeemed_by, redeemed_at=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return None
        return await self.get(db, code)

    async def release(self, db: AsyncSession, code: str, redeemed_by: str) -> bool:
        """Undo a claim made by `redeemed_by`."""
        stmt = (
            update(Voucher)
            .where(
                Voucher.code == code,
                Voucher.used.is_(True),
                Voucher.redeemed_by == redeemed_by,
            )
            .values(used=False, redeemed_by=None, redeemed_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def get(self, db: AsyncSession, code: str) -> Optional[Voucher]:
        stmt = (
            select(Voucher)
            .where(Voucher.code == code)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_vouchers(
        self, db: AsyncSession, used: Optional[bool] = None, limit: int = 100
    ) -> List[Voucher]:
        stmt = select(Voucher).order_by(Voucher.created_at.desc(), Voucher.id.desc()).limit(limit)
        if used is not None:
            stmt = stmt.where(Voucher.used.is_(used))
        result = await db.execute(stmt)
        return list(result.scalars().all())
