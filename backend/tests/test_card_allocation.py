from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

import pytest

from backoffice.core.errors import ValidationError
from backoffice.services.card_service import (
    check_recharge,
    classify_card,
    compute_card_capacity,
    compute_remainder,
    plan_distribution,
    select_all,
)


@dataclass
class StubCard:
    id: int
    cid: str
    monthly_limit: Decimal
    monthly_used: Decimal
    recharge_limit: Decimal
    country: str = "Mali"
    status: str = "active"
    expiration_date: date | None = None


def _card(card_id: int, limit: str, used: str, recharge: str, **kwargs) -> StubCard:
    return StubCard(card_id, f"CID-{card_id}", Decimal(limit), Decimal(used), Decimal(recharge), **kwargs)


@pytest.fixture
def card_a() -> StubCard:
    return _card(1, "2000000", "1500000", "300000")


@pytest.fixture
def card_b() -> StubCard:
    return _card(2, "2000000", "0", "500000")


def test_capacity_is_bounded_by_recharge_limit(card_a, card_b) -> None:
    assert compute_card_capacity(card_a) == Decimal("300000")
    assert compute_card_capacity(card_b) == Decimal("500000")


def test_capacity_is_bounded_by_monthly_remainder() -> None:
    card = _card(3, "2000000", "1900000", "500000")
    assert compute_card_capacity(card) == Decimal("100000")


def test_capacity_never_negative_when_over_used() -> None:
    card = _card(3, "2000000", "2100000", "500000")
    assert compute_card_capacity(card) == Decimal("0")


def test_classification(card_a, card_b) -> None:
    exhausted = _card(3, "2000000", "2000000", "500000")
    assert classify_card(card_b) == "available"
    assert classify_card(card_a) == "partial"
    assert classify_card(exhausted) == "exhausted"


def test_select_all_picks_exactly_cards_with_capacity(card_a, card_b) -> None:
    exhausted = _card(3, "2000000", "2000000", "500000")
    over_used = _card(4, "2000000", "2500000", "500000")
    assert select_all([card_a, exhausted, card_b, over_used]) == [1, 2]


def test_end_to_end_remainder_scenario(card_a, card_b) -> None:
    plan = plan_distribution(Decimal("900000"), "Mali", [card_a, card_b], [1, 2])

    assert plan.total_capacity == Decimal("800000")
    assert plan.remaining_amount == Decimal("100000")
    assert plan.total_distributed == Decimal("800000")
    assert plan.cards_used == 2
    assert [(line.card_id, line.amount, line.remaining_capacity) for line in plan.lines] == [
        (1, Decimal("300000"), Decimal("0")),
        (2, Decimal("500000"), Decimal("0")),
    ]


def test_remainder_is_zero_when_capacity_covers_request(card_a, card_b) -> None:
    plan = plan_distribution(Decimal("600000"), "Mali", [card_a, card_b], [1, 2])

    assert plan.remaining_amount == Decimal("0")
    assert plan.total_distributed == Decimal("600000")
    assert plan.lines[1].amount == Decimal("300000")
    assert plan.lines[1].remaining_capacity == Decimal("200000")
    assert compute_remainder(Decimal("600000"), [card_a, card_b]) == Decimal("0")


def test_cards_are_filled_in_selection_order(card_a, card_b) -> None:
    plan = plan_distribution(Decimal("600000"), "Mali", [card_a, card_b], [2, 1])

    assert [(line.card_id, line.amount) for line in plan.lines] == [
        (2, Decimal("500000")),
        (1, Decimal("100000")),
    ]


def test_cards_not_needed_are_left_out(card_a, card_b) -> None:
    plan = plan_distribution(Decimal("200000"), "Mali", [card_a, card_b], [1, 2])

    assert plan.cards_used == 1
    assert plan.lines[0].amount == Decimal("200000")


def test_fees_are_reported_not_deducted(card_a, card_b) -> None:
    plan = plan_distribution(
        Decimal("900000"), "Mali", [card_a, card_b], [1, 2], fee_per_card=Decimal("14000")
    )

    assert plan.total_fees == Decimal("28000")
    assert plan.total_distributed == Decimal("800000")


@pytest.mark.parametrize("amount, country", [
    (None, "Mali"),
    (Decimal("0"), "Mali"),
    (Decimal("-5"), "Mali"),
    (Decimal("1000"), None),
])
def test_amount_and_country_are_required(card_b, amount, country) -> None:
    with pytest.raises(ValidationError, match="Amount and country required"):
        plan_distribution(amount, country, [card_b], [2])


def test_at_least_one_card_is_required(card_b) -> None:
    with pytest.raises(ValidationError, match="Select at least one card"):
        plan_distribution(Decimal("1000"), "Mali", [card_b], [])


def test_exhausted_card_cannot_be_selected(card_b) -> None:
    exhausted = _card(3, "2000000", "2000000", "500000")
    with pytest.raises(ValidationError, match="without available capacity"):
        plan_distribution(Decimal("1000"), "Mali", [card_b, exhausted], [2, 3])


def test_unknown_or_foreign_card_cannot_be_selected(card_b) -> None:
    congo = _card(5, "2000000", "0", "500000", country="Congo")
    with pytest.raises(ValidationError):
        plan_distribution(Decimal("1000"), "Mali", [card_b], [2, 99])
    with pytest.raises(ValidationError, match="not issued in Mali"):
        plan_distribution(Decimal("1000"), "Mali", [card_b, congo], [2, 5])


def test_recharge_checks(card_a) -> None:
    check_recharge(card_a, Decimal("300000"))

    with pytest.raises(ValidationError, match="recharge limit"):
        check_recharge(card_a, Decimal("300001"))

    near_limit = _card(6, "2000000", "1900000", "500000")
    with pytest.raises(ValidationError, match="remaining monthly allowance"):
        check_recharge(near_limit, Decimal("150000"))

    inactive = _card(7, "2000000", "0", "500000", status="inactive")
    with pytest.raises(ValidationError, match="inactive"):
        check_recharge(inactive, Decimal("1000"))

    expired = _card(8, "2000000", "0", "500000", expiration_date=date.today() - timedelta(days=1))
    with pytest.raises(ValidationError, match="expired"):
        check_recharge(expired, Decimal("1000"))
