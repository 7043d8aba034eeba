# src/tillsync/models/__init__.py
"""SQLAlchemy models for the local point-of-sale store."""

from .base import SyncableMixin, new_id
from .billing import Bill, Payment, Receipt, SplitPayment
from .customer import Customer, CustomerAdvance
from .expense import Expense, ExpenseSettlement
from .menu import MenuItem
from .order import KotItem, KotOrder
from .sync_state import LocalCounter, SyncCheckpoint

__all__ = [
    "SyncableMixin", "new_id",
    "Bill", "Payment", "Receipt", "SplitPayment",
    "Customer", "CustomerAdvance",
    "Expense", "ExpenseSettlement",
    "MenuItem",
    "KotItem", "KotOrder",
    "LocalCounter", "SyncCheckpoint",
]
