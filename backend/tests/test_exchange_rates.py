from __future__ import annotations

from decimal import Decimal

import pytest

from backoffice.core.errors import ValidationError
from backoffice.services.exchange_service import compute_purchase, compute_sale, round_rate


def test_purchase_effective_rate_includes_fees() -> None:
    quote = compute_purchase(Decimal("1000000"), Decimal("650"), Decimal("10"), Decimal("5"), Decimal("5"))

    assert quote.gross_bought.quantize(Decimal("0.01")) == Decimal("1538.46")
    assert quote.total_available.quantize(Decimal("0.01")) == Decimal("1518.46")
    assert quote.effective_rate == Decimal("658.56")


def test_purchase_without_fees_keeps_rate() -> None:
    quote = compute_purchase(Decimal("650000"), Decimal("650"))

    assert quote.total_available == Decimal("1000")
    assert quote.effective_rate == Decimal("650.00")


def test_purchase_fees_above_gross_fall_back_to_purchase_rate() -> None:
    quote = compute_purchase(Decimal("1000"), Decimal("650"), transport_fees=Decimal("5"))

    assert quote.total_available == Decimal("0")
    assert quote.effective_rate == Decimal("650.00")


@pytest.mark.parametrize("paid, rate", [
    (Decimal("1000"), Decimal("0")),
    (Decimal("1000"), Decimal("-650")),
    (Decimal("0"), Decimal("650")),
])
def test_purchase_rejects_non_positive_inputs(paid, rate) -> None:
    with pytest.raises(ValidationError):
        compute_purchase(paid, rate)


def test_sale_commission_is_spread_over_effective_rate() -> None:
    quote = compute_sale(Decimal("1000"), Decimal("660"), Decimal("650"))

    assert quote.received_amount == Decimal("660000")
    assert quote.commission == Decimal("10000")
    assert quote.baseline_is_fallback is False


@pytest.mark.parametrize("day_rate", [Decimal("650"), Decimal("640"), Decimal("600.5")])
def test_sale_commission_is_zero_when_day_rate_not_above_effective(day_rate) -> None:
    quote = compute_sale(Decimal("1000"), day_rate, Decimal("650"))

    assert quote.commission == Decimal("0")


@pytest.mark.parametrize("last_rate", [None, Decimal("0")])
def test_sale_without_known_rate_uses_day_rate_baseline(last_rate) -> None:
    quote = compute_sale(Decimal("1000"), Decimal("660"), last_rate)

    assert quote.baseline_is_fallback is True
    assert quote.baseline_rate == Decimal("660.00")
    assert quote.commission == Decimal("0")
    assert quote.received_amount == Decimal("660000")


def test_sale_rejects_non_positive_day_rate() -> None:
    with pytest.raises(ValidationError):
        compute_sale(Decimal("1000"), Decimal("0"), Decimal("650"))


def test_round_rate_is_half_up() -> None:
    assert round_rate(Decimal("658.565")) == Decimal("658.57")
    assert round_rate(Decimal("658.5613")) == Decimal("658.56")
