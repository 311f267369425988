from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from utils.validators import as_date, as_datetime, as_money


class FineStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


@dataclass(frozen=True)
class FinePolicy:
    """Rate, grace period and cap applied to overdue loans."""

    rate_per_day: Decimal
    grace_period_days: int = 0
    max_fine_amount: Optional[Decimal] = None
    is_active: bool = True
    updated_by: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rate_per_day": str(self.rate_per_day),
            "grace_period_days": self.grace_period_days,
            "max_fine_amount": str(self.max_fine_amount) if self.max_fine_amount is not None else None,
            "is_active": self.is_active,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "FinePolicy":
        return FinePolicy(
            id=data.get("id"),
            rate_per_day=as_money(data["rate_per_day"]),
            grace_period_days=int(data.get("grace_period_days") or 0),
            max_fine_amount=as_money(data.get("max_fine_amount")),
            is_active=bool(data.get("is_active", True)),
            updated_by=data.get("updated_by"),
            created_at=as_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class FineResult:
    """Outcome of evaluating one overdue loan against a policy."""

    amount: Decimal
    days_overdue: int
    fine_rate_per_day: Decimal


@dataclass(frozen=True)
class Fine:
    loan_id: int
    student_id: int
    amount: Decimal
    days_overdue: int
    fine_rate_per_day: Decimal
    status: FineStatus = FineStatus.PENDING
    paid_date: Optional[date] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == FineStatus.PENDING

    def recomputed(self, result: FineResult, when: Optional[datetime] = None) -> "Fine":
        return replace(
            self,
            amount=result.amount,
            days_overdue=result.days_overdue,
            fine_rate_per_day=result.fine_rate_per_day,
            updated_at=when or self.updated_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loan_id": self.loan_id,
            "student_id": self.student_id,
            "amount": str(self.amount),
            "days_overdue": self.days_overdue,
            "fine_rate_per_day": str(self.fine_rate_per_day),
            "status": self.status.value,
            "paid_date": self.paid_date.isoformat() if self.paid_date else None,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @staticmethod
    def from_dict(data: dict) -> "Fine":
        return Fine(
            id=data.get("id"),
            loan_id=int(data["loan_id"]),
            student_id=int(data["student_id"]),
            amount=as_money(data["amount"]),
            days_overdue=int(data["days_overdue"]),
            fine_rate_per_day=as_money(data["fine_rate_per_day"]),
            status=FineStatus(data.get("status", FineStatus.PENDING.value)),
            paid_date=as_date(data.get("paid_date")),
            notes=data.get("notes"),
            created_at=as_datetime(data.get("created_at")),
            updated_at=as_datetime(data.get("updated_at")),
        )
