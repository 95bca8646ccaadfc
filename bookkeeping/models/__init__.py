"""Database models."""
from bookkeeping.models.base import generate_id
from bookkeeping.models.xero import XeroConnection, OAuthState
from bookkeeping.models.ledger import GLAccount, BankAccount, Contact, BankTransaction
from bookkeeping.models.invoices import SyncedInvoice, RepeatingTransaction, PaymentPattern
from bookkeeping.models.cashflow import CashFlowBudget
from bookkeeping.models.sync import SyncLog, SyncCheckpoint

__all__ = [
    "generate_id",
    "XeroConnection",
    "OAuthState",
    "GLAccount",
    "BankAccount",
    "Contact",
    "BankTransaction",
    "SyncedInvoice",
    "RepeatingTransaction",
    "PaymentPattern",
    "CashFlowBudget",
    "SyncLog",
    "SyncCheckpoint",
]
