"""Fine policy resolution.

Only one policy is current at a time: the most recently created active row.
Fines keep a snapshot of the rate they were computed with and are never
recalculated when the policy changes later.
"""

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from config import settings
from errors import NotFound, ValidationError
from fine import FinePolicy
from repository import LibraryRepository
from utils.validators import as_money

logger = logging.getLogger(__name__)

# Used when no active policy row exists
DEFAULT_POLICY = FinePolicy(
    rate_per_day=as_money(settings.default_fine_rate),
    grace_period_days=0,
    max_fine_amount=None,
)


def resolve_current_policy(repo: LibraryRepository, now: Optional[datetime] = None) -> FinePolicy:
    """Return the policy in force at ``now``, falling back to ``DEFAULT_POLICY``."""
    policy = repo.latest_active_policy(as_of=now)
    return policy if policy is not None else DEFAULT_POLICY


class PolicyService:
    def __init__(self, repo: LibraryRepository) -> None:
        self.repo = repo

    def current(self, now: Optional[datetime] = None) -> FinePolicy:
        return resolve_current_policy(self.repo, now)

    def set_policy(
        self,
        rate_per_day,
        grace_period_days: int = 0,
        max_fine_amount=None,
        updated_by: Optional[int] = None,
    ) -> FinePolicy:
        """Create a new active policy; it becomes current for every later evaluation."""
        rate = as_money(rate_per_day)
        if rate is None or rate < Decimal("0"):
            raise ValidationError("rate_per_day must be zero or positive.")
        if grace_period_days is None or int(grace_period_days) < 0:
            raise ValidationError("grace_period_days must be zero or positive.")
        cap = as_money(max_fine_amount)
        if cap is not None and cap < Decimal("0"):
            raise ValidationError("max_fine_amount must be zero or positive.")
        if updated_by is not None and self.repo.get_librarian(updated_by) is None:
            raise NotFound(f"Librarian {updated_by} not found.")

        policy = self.repo.add_policy(
            FinePolicy(
                rate_per_day=rate,
                grace_period_days=int(grace_period_days),
                max_fine_amount=cap,
                updated_by=updated_by,
            )
        )
        logger.info(
            f"Fine policy {policy.id} active: rate={policy.rate_per_day}/day, "
            f"grace={policy.grace_period_days}, cap={policy.max_fine_amount}"
        )
        return policy

    def deactivate_policy(self, policy_id: int) -> FinePolicy:
        policy = next((p for p in self.repo.list_policies() if p.id == policy_id), None)
        if policy is None:
            raise NotFound(f"Fine policy {policy_id} not found.")
        return self.repo.update_policy(replace(policy, is_active=False))

    def list_policies(self) -> List[FinePolicy]:
        return self.repo.list_policies()
