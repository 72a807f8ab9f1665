"""SQLAlchemy database models for the payment-to-access pipeline."""
import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionStatus(str, enum.Enum):
    """Lifecycle states of a payment attempt."""

    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


class Transaction(Base):
    """
    STK push transactions table.

    One row per push-payment request accepted by the provider, keyed by the
    provider's CheckoutRequestID. Status moves out of Pending exactly once.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    checkout_request_id: Mapped[str] = mapped_column(
        String(128), unique=True, nullable=False, index=True
    )
    merchant_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    plan: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    mpesa_receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_desc: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('Pending', 'Success', 'Failed')",
            name="valid_status",
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(checkout_request_id={self.checkout_request_id}, "
            f"phone={self.phone_number}, plan={self.plan}, status={self.status})>"
        )


class Voucher(Base):
    """
    Pre-issued access codes.

    A voucher is redeemable once; `used` flips from false to true through a
    conditional update only.
    """

    __tablename__ = "vouchers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    plan: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    agent: Mapped[str | None] = mapped_column(String(128), nullable=True)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    redeemed_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (CheckConstraint("amount >= 0", name="non_negative_voucher_amount"),)

    def __repr__(self) -> str:
        return f"<Voucher(code={self.code}, plan={self.plan}, used={self.used})>"
