from decimal import Decimal

import pytest

from config import settings
from errors import NotFound, ValidationError
from fine_policy import DEFAULT_POLICY, PolicyService
from members import Librarian
from repository import InMemoryRepository


@pytest.fixture
def service():
    return PolicyService(InMemoryRepository())


def test_default_policy_matches_settings():
    assert DEFAULT_POLICY.rate_per_day == Decimal(settings.default_fine_rate).quantize(Decimal("0.01"))
    assert DEFAULT_POLICY.grace_period_days == 0
    assert DEFAULT_POLICY.max_fine_amount is None


def test_current_falls_back_to_default(service):
    assert service.current() is DEFAULT_POLICY


def test_set_policy_becomes_current(service):
    policy = service.set_policy("3.5", grace_period_days=2, max_fine_amount="30")
    assert policy.id is not None
    assert policy.rate_per_day == Decimal("3.50")
    assert policy.max_fine_amount == Decimal("30.00")
    assert service.current() == policy


def test_newest_policy_wins(service):
    service.set_policy("1.00")
    newest = service.set_policy("2.00")
    assert service.current() == newest
    assert [p.rate_per_day for p in service.list_policies()] == [Decimal("2.00"), Decimal("1.00")]


def test_deactivate_policy_restores_previous(service):
    first = service.set_policy("1.00")
    newest = service.set_policy("2.00")
    service.deactivate_policy(newest.id)
    assert service.current() == first
    with pytest.raises(NotFound):
        service.deactivate_policy(999)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rate_per_day": "-1"},
        {"rate_per_day": "abc"},
        {"rate_per_day": "1.00", "grace_period_days": -1},
        {"rate_per_day": "1.00", "max_fine_amount": "-5"},
    ],
)
def test_invalid_policy_is_rejected(service, kwargs):
    with pytest.raises(ValidationError):
        service.set_policy(**kwargs)
    assert service.list_policies() == []


def test_policy_author_must_exist(service):
    with pytest.raises(NotFound):
        service.set_policy("1.00", updated_by=7)
    librarian = service.repo.add_librarian(Librarian(name="Mia", email="mia@uni.edu", employee_id="E1"))
    assert service.set_policy("1.00", updated_by=librarian.id).updated_by == librarian.id
