"""Database package for the hotspot bridge."""
from .connection import get_db, init_db
from .models import Base, Transaction, TransactionStatus, Voucher
from .repository import TransactionStore, VoucherStore

__all__ = [
    "Base",
    "Transaction",
    "TransactionStatus",
    "Voucher",
    "TransactionStore",
    "VoucherStore",
    "get_db",
    "init_db",
]
