"""Cash-flow budget lines."""
from sqlalchemy import Column, String, DateTime, Numeric, Text, UniqueConstraint
from sqlalchemy.sql import func

from bookkeeping.database import Base
from bookkeeping.models.base import generate_id


class CashFlowBudget(Base):
    """Budgeted vs actual amount for one account in one month."""

    __tablename__ = "cash_flow_budgets"
    __table_args__ = (
        UniqueConstraint("account_code", "month_year", name="uq_cash_flow_budgets_account_month"),
    )

    id = Column(String, primary_key=True, default=lambda: generate_id("budget"))
    account_code = Column(String(50), nullable=False, index=True)
    account_name = Column(String(200), nullable=False)
    category = Column(String, nullable=False)  # REVENUE | EXPENSE | TAX | CAPITAL | OTHER
    month_year = Column(String(7), nullable=False, index=True)  # YYYY-MM
    budgeted_amount = Column(Numeric(precision=15, scale=2), nullable=False)
    actual_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    imported_from = Column(String, nullable=True)  # manual | manual_import | xero_export

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def variance(self):
        return (self.actual_amount or 0) - (self.budgeted_amount or 0)
