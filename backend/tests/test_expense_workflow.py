from __future__ import annotations

from decimal import Decimal

import pytest

from backoffice.core.errors import StateTransitionError, ValidationError
from backoffice.models import CashExcessEntry, Expense, Notification
from backoffice.schemas import ExpenseCreate, ExpenseUpdate
from backoffice.services.cash_service import CashExcessService
from backoffice.services.expense_service import (
    ExpenseService,
    can_modify,
    clean_rejection_reason,
    next_status,
    is_terminal,
    reachable_statuses,
)

ALL_STATUSES = [
    "pending", "accounting_approved", "accounting_rejected",
    "director_approved", "director_rejected", "approved", "rejected",
]


# ==================== transition rules ====================

def test_pending_only_reaches_accounting_outcomes() -> None:
    assert not is_terminal("pending")
    assert reachable_statuses("pending") == {"accounting_approved", "accounting_rejected"}
    assert next_status("pending", "accounting", True) == "accounting_approved"
    assert next_status("pending", "accounting", False) == "accounting_rejected"


def test_accounting_approved_only_reaches_director_outcomes() -> None:
    assert reachable_statuses("accounting_approved") == {"director_approved", "director_rejected"}
    assert next_status("accounting_approved", "director", True) == "director_approved"
    assert next_status("accounting_approved", "director", False) == "director_rejected"


@pytest.mark.parametrize("status", [
    "accounting_rejected", "director_approved", "director_rejected", "approved", "rejected",
])
def test_terminal_statuses_have_no_transition(status) -> None:
    assert is_terminal(status)
    assert reachable_statuses(status) == set()
    for stage in ("accounting", "director"):
        with pytest.raises(StateTransitionError, match="not allowed in current state"):
            next_status(status, stage, True)


def test_director_cannot_act_on_pending() -> None:
    with pytest.raises(StateTransitionError):
        next_status("pending", "director", True)


def test_accounting_cannot_act_twice() -> None:
    with pytest.raises(StateTransitionError):
        next_status("accounting_approved", "accounting", True)


@pytest.mark.parametrize("status", ALL_STATUSES)
def test_edit_and_delete_rule(status) -> None:
    assert can_modify(status) is (status not in {"director_approved", "approved"})


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_rejection_requires_reason(reason) -> None:
    with pytest.raises(ValidationError):
        clean_rejection_reason(False, reason)
    assert clean_rejection_reason(True, reason) is None
    assert clean_rejection_reason(False, "  no receipt ") == "no receipt"


# ==================== service ====================

@pytest.fixture
def users(make_user):
    return {
        "cashier": make_user("cashier", "awa"),
        "other_cashier": make_user("cashier", "moussa"),
        "accounting": make_user("accounting", "compta"),
        "director": make_user("director", "dg"),
        "admin": make_user("super_admin", "root"),
    }


def _create(db, actor, amount="30000", **kwargs) -> Expense:
    expense = ExpenseService(db).create(
        ExpenseCreate(description="Taxi", amount=Decimal(amount), category="Transport", **kwargs), actor
    )
    db.commit()
    return expense


def test_two_stage_approval_and_notifications(db, users) -> None:
    service = ExpenseService(db)
    expense = _create(db, users["cashier"])
    assert expense.status == "pending"
    assert expense.agency == "Head office"

    service.validate(expense.id, True, "accounting", None, users["accounting"])
    db.commit()
    assert expense.status == "accounting_approved"
    assert expense.accounting_validated_by == users["accounting"].display_name

    targets = {(n.target_role, n.target_user_name) for n in db.query(Notification).filter(
        Notification.event == "expense_accounting_approved")}
    assert targets == {(None, "awa"), ("director", None)}

    service.validate(expense.id, True, "director", None, users["director"])
    db.commit()
    assert expense.status == "director_approved"

    targets = {(n.target_role, n.target_user_name) for n in db.query(Notification).filter(
        Notification.event == "expense_director_approved")}
    assert targets == {(None, "awa"), ("accounting", None)}


def test_director_action_on_pending_is_rejected(db, users) -> None:
    expense = _create(db, users["cashier"])

    with pytest.raises(StateTransitionError):
        ExpenseService(db).validate(expense.id, True, "director", None, users["director"])
    db.rollback()

    assert db.get(Expense, expense.id).status == "pending"


def test_stage_is_reserved_to_its_role(db, users) -> None:
    expense = _create(db, users["cashier"])
    service = ExpenseService(db)

    with pytest.raises(PermissionError):
        service.validate(expense.id, True, "accounting", None, users["director"])
    service.validate(expense.id, True, "accounting", None, users["accounting"])
    with pytest.raises(PermissionError):
        service.validate(expense.id, True, "director", None, users["accounting"])

    # super_admin may act at both stages
    service.validate(expense.id, True, "director", None, users["admin"])
    assert expense.status == "director_approved"


def test_rejection_without_reason_changes_nothing(db, users) -> None:
    expense = _create(db, users["cashier"])

    with pytest.raises(ValidationError):
        ExpenseService(db).validate(expense.id, False, "accounting", "  ", users["accounting"])
    db.rollback()

    assert db.get(Expense, expense.id).status == "pending"


def test_rejection_stores_reason(db, users) -> None:
    expense = _create(db, users["cashier"])

    ExpenseService(db).validate(expense.id, False, "accounting", "No receipt", users["accounting"])
    db.commit()

    assert expense.status == "accounting_rejected"
    assert expense.accounting_rejection_reason == "No receipt"


def test_approved_expense_is_frozen(db, users) -> None:
    service = ExpenseService(db)
    expense = _create(db, users["cashier"])
    service.validate(expense.id, True, "accounting", None, users["accounting"])
    service.validate(expense.id, True, "director", None, users["director"])
    db.commit()

    with pytest.raises(StateTransitionError):
        service.update(expense.id, ExpenseUpdate(amount=Decimal("1")), users["cashier"])
    with pytest.raises(StateTransitionError):
        service.delete(expense.id, users["admin"])


def test_rejected_expense_can_be_edited_by_requester(db, users) -> None:
    service = ExpenseService(db)
    expense = _create(db, users["cashier"])
    service.validate(expense.id, False, "accounting", "Wrong amount", users["accounting"])
    db.commit()

    service.update(expense.id, ExpenseUpdate(amount=Decimal("25000"), category="Bureau"), users["cashier"])
    db.commit()
    assert expense.amount == Decimal("25000")
    assert expense.category == "Bureau"

    with pytest.raises(PermissionError):
        service.delete(expense.id, users["other_cashier"])


def test_explicit_null_clears_comment(db, users) -> None:
    service = ExpenseService(db)
    expense = _create(db, users["cashier"], comment="Airport run")

    service.update(expense.id, ExpenseUpdate(comment=None, description=None), users["cashier"])
    db.commit()

    db.refresh(expense)
    assert expense.comment is None
    assert expense.description == "Taxi"


def test_bypass_accounting(db, users) -> None:
    service = ExpenseService(db)
    expense = _create(db, users["cashier"])

    with pytest.raises(PermissionError):
        service.bypass_accounting(expense.id, True, None, users["accounting"])

    service.bypass_accounting(expense.id, True, None, users["director"])
    db.commit()
    assert expense.status == "director_approved"
    assert expense.accounting_bypassed is True
    assert expense.accounting_validated_by is None

    second = _create(db, users["cashier"])
    service.validate(second.id, True, "accounting", None, users["accounting"])
    with pytest.raises(StateTransitionError):
        service.bypass_accounting(second.id, True, None, users["director"])


# ==================== cash excess ====================

def _declare(db, cashier, amount: str) -> None:
    CashExcessService(db).declare(Decimal(amount), cashier)
    db.commit()


def test_director_approval_commits_excess_deduction(db, users) -> None:
    cashier = users["cashier"]
    _declare(db, cashier, "50000")
    service = ExpenseService(db)
    expense = _create(db, cashier, deduct_from_excess=True)
    assert expense.deducted_cashier_id == cashier.id

    service.validate(expense.id, True, "accounting", None, users["accounting"])
    assert CashExcessService(db).available_excess(cashier.id) == Decimal("50000")

    service.validate(expense.id, True, "director", None, users["director"])
    db.commit()

    entry = db.query(CashExcessEntry).filter(CashExcessEntry.expense_id == expense.id).one()
    assert entry.amount == Decimal("-30000")
    assert CashExcessService(db).available_excess(cashier.id) == Decimal("20000")


def test_amount_above_available_excess_quotes_it(db, users) -> None:
    _declare(db, users["cashier"], "50000")

    with pytest.raises(ValidationError, match="50,000.00"):
        _create(db, users["cashier"], amount="60000", deduct_from_excess=True)


def test_cashier_may_only_use_own_excess(db, users) -> None:
    _declare(db, users["other_cashier"], "50000")

    with pytest.raises(PermissionError):
        _create(db, users["cashier"], deduct_from_excess=True, deducted_cashier_id=users["other_cashier"].id)


def test_accounting_picks_cashier_with_excess(db, users) -> None:
    _declare(db, users["other_cashier"], "50000")

    assert [c["id"] for c in CashExcessService(db).cashiers_with_excess()] == [users["other_cashier"].id]
    with pytest.raises(ValidationError):
        _create(db, users["accounting"], deduct_from_excess=True)

    expense = _create(db, users["accounting"], deduct_from_excess=True,
                      deducted_cashier_id=users["other_cashier"].id)
    assert expense.deducted_cashier_id == users["other_cashier"].id


def test_excess_is_rechecked_on_director_approval(db, users) -> None:
    cashier = users["cashier"]
    _declare(db, cashier, "50000")
    service = ExpenseService(db)
    first = _create(db, cashier, deduct_from_excess=True)
    second = _create(db, cashier, deduct_from_excess=True)
    for expense in (first, second):
        service.validate(expense.id, True, "accounting", None, users["accounting"])
    service.validate(first.id, True, "director", None, users["director"])
    db.commit()

    with pytest.raises(ValidationError):
        service.validate(second.id, True, "director", None, users["director"])
    db.rollback()

    assert db.get(Expense, second.id).status == "accounting_approved"
    assert CashExcessService(db).available_excess(cashier.id) == Decimal("20000")


def test_listing_by_role(db, users) -> None:
    service = ExpenseService(db)
    mine = _create(db, users["cashier"])
    other = _create(db, users["other_cashier"])
    service.validate(other.id, True, "accounting", None, users["accounting"])
    db.commit()

    assert [e.id for e in service.list_for_user(users["cashier"])] == [mine.id]
    assert {e.id for e in service.list_for_user(users["accounting"])} == {mine.id, other.id}
    assert [e.id for e in service.pending_for_user(users["accounting"])] == [mine.id]
    assert [e.id for e in service.pending_for_user(users["director"])] == [other.id]
    assert service.pending_for_user(users["cashier"]) == []

    summary = service.get_summary()
    assert summary["count"] == 2
    assert summary["total_amount"] == Decimal("60000")
    assert summary["by_category"]["Transport"]["count"] == 2
