from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from backoffice.core.errors import StateTransitionError, ValidationError
from backoffice.models import Card, CardDistribution, CardHistory, CashTransaction, CountryLimit
from backoffice.schemas import CardCreate, CardImportItem, CardUpdate, DistributionRequest
from backoffice.services.card_service import CardService, CountryLimitService
from backoffice.services.cash_service import CashAccountService


@pytest.fixture
def accountant(make_user):
    return make_user("accounting", "compta")


@pytest.fixture
def mali_cards(make_card):
    return (
        make_card("MALI-A", monthly_used="1500000", recharge_limit="300000"),
        make_card("MALI-B"),
    )


def test_default_country_limits_are_seeded(db) -> None:
    limits = {row.country: row for row in db.query(CountryLimit).all()}

    assert set(limits) == {"Mali", "RDC", "France", "Congo"}
    assert limits["Mali"].card_fee == Decimal("14000")
    assert limits["RDC"].card_fee == Decimal("14000")
    assert limits["France"].card_fee == Decimal("0")
    assert limits["Congo"].monthly_limit == Decimal("2000000")


def test_distribute_credits_cards_and_writes_log(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    request = DistributionRequest(amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id])

    distribution, plan = CardService(db).distribute(request, accountant)
    db.commit()

    assert plan.remaining_amount == Decimal("100000")
    assert distribution.total_distributed == Decimal("800000")
    assert distribution.cards_used == 2
    assert distribution.total_fees == Decimal("28000")
    assert len(distribution.items) == 2

    db.refresh(card_a)
    db.refresh(card_b)
    assert card_a.monthly_used == Decimal("1800000")
    assert card_b.monthly_used == Decimal("500000")
    assert card_a.last_recharge_date == date.today()

    history = db.query(CardHistory).filter(CardHistory.action == "distribution").all()
    assert {entry.card_cid for entry in history} == {"MALI-A", "MALI-B"}
    assert all(entry.distribution_id == distribution.id for entry in history)


def test_vault_is_debited_by_requested_amount(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    CashAccountService(db).deposit_to_vault(Decimal("1000000"), actor=accountant)
    db.commit()

    request = DistributionRequest(
        amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id], deduct_from_vault=True
    )
    CardService(db).distribute(request, accountant)
    db.commit()

    vault = CashAccountService(db).get_vault()
    assert vault.current_balance == Decimal("100000")
    withdrawal = db.query(CashTransaction).filter(CashTransaction.transaction_type == "distribution").one()
    assert withdrawal.amount == Decimal("-900000")


def test_insufficient_vault_leaves_nothing_behind(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    request = DistributionRequest(
        amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id], deduct_from_vault=True
    )

    with pytest.raises(ValidationError, match="Insufficient vault balance"):
        CardService(db).distribute(request, accountant)
    db.rollback()

    assert db.query(CardDistribution).count() == 0
    assert db.query(Card).filter(Card.cid == "MALI-B").one().monthly_used == Decimal("0")


def test_expired_and_inactive_cards_are_not_candidates(db, accountant, make_card) -> None:
    expired = make_card("MALI-OLD", expiration_date=date.today() - timedelta(days=1))
    inactive = make_card("MALI-OFF", status="inactive")
    active = make_card("MALI-OK")

    candidates = CardService(db).get_candidate_cards("Mali")
    assert [card.cid for card in candidates] == ["MALI-OK"]

    for card in (expired, inactive):
        request = DistributionRequest(amount=Decimal("1000"), country="Mali", card_ids=[active.id, card.id])
        with pytest.raises(ValidationError):
            CardService(db).distribute(request, accountant)
        db.rollback()


def test_card_from_another_country_is_rejected(db, accountant, make_card) -> None:
    mali = make_card("MALI-1")
    congo = make_card("CONGO-1", country="Congo")
    request = DistributionRequest(amount=Decimal("1000"), country="Mali", card_ids=[mali.id, congo.id])

    with pytest.raises(ValidationError):
        CardService(db).distribute(request, accountant)


def test_preview_has_no_side_effects(db, mali_cards) -> None:
    card_a, card_b = mali_cards
    request = DistributionRequest(amount=Decimal("900000"), country="Mali", card_ids=[card_b.id, card_a.id])

    plan = CardService(db).preview_distribution(request)

    assert plan.lines[0].amount == Decimal("500000")
    assert db.query(CardDistribution).count() == 0


def test_recharge_updates_usage(db, accountant, make_card) -> None:
    card = make_card("RDC-1", country="RDC")

    CardService(db).recharge(card.id, Decimal("250000"), accountant, notes="guichet")
    db.commit()

    db.refresh(card)
    assert card.monthly_used == Decimal("250000")
    entry = db.query(CardHistory).filter(CardHistory.action == "recharge").one()
    assert entry.amount == Decimal("250000")
    assert entry.user_name == accountant.display_name


def test_country_limits_update_applies_to_country_cards(db, accountant, make_card) -> None:
    mali = make_card("MALI-1")
    france = make_card("FR-1", country="France")
    limits = CountryLimitService(db)

    with pytest.raises(ValidationError, match="cannot exceed"):
        limits.update("Mali", Decimal("100000"), Decimal("200000"), actor=accountant)

    updated = limits.update("Mali", Decimal("3000000"), Decimal("600000"), actor=accountant)
    db.commit()

    assert updated == 1
    db.refresh(mali)
    db.refresh(france)
    assert mali.monthly_limit == Decimal("3000000")
    assert mali.recharge_limit == Decimal("600000")
    assert france.monthly_limit == Decimal("2000000")


def test_reset_usage_for_one_country(db, accountant, make_card) -> None:
    mali = make_card("MALI-1", monthly_used="700000")
    rdc = make_card("RDC-1", country="RDC", monthly_used="400000")

    assert CardService(db).reset_usage(accountant, country="Mali") == 1
    db.commit()

    db.refresh(mali)
    db.refresh(rdc)
    assert mali.monthly_used == Decimal("0")
    assert rdc.monthly_used == Decimal("400000")


def test_bulk_import_skips_existing_cids(db, accountant, make_card) -> None:
    make_card("MALI-1")
    items = [
        CardImportItem(cid="MALI-1", country="Mali"),
        CardImportItem(cid="MALI-2", country="Mali"),
        CardImportItem(cid="MALI-2", country="Mali"),
        CardImportItem(cid="CG-1", country="Congo"),
    ]

    result = CardService(db).bulk_import(items, accountant)
    db.commit()

    assert [card.cid for card in result["created"]] == ["MALI-2", "CG-1"]
    assert [row["cid"] for row in result["skipped"]] == ["MALI-1", "MALI-2"]
    assert result["total"] == 4


def test_padded_cid_is_a_duplicate(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    service = CardService(db)

    with pytest.raises(ValidationError, match="MALI-A already exists"):
        service.create(CardCreate(cid="  MALI-A ", country="Mali"), accountant)

    with pytest.raises(ValidationError, match="MALI-A already exists"):
        service.update(card_b.id, CardUpdate(cid=" MALI-A"), accountant)
    db.rollback()

    renamed = service.update(card_b.id, CardUpdate(cid=" MALI-C "), accountant)
    assert renamed.cid == "MALI-C"


def test_explicit_null_clears_expiration_date(db, accountant, make_card) -> None:
    card = make_card("MALI-1", expiration_date=date.today() + timedelta(days=30))

    CardService(db).update(card.id, CardUpdate(expiration_date=None), accountant)
    db.commit()

    db.refresh(card)
    assert card.expiration_date is None
    assert card.status == "active"


def test_set_status_writes_status_change(db, accountant, make_card) -> None:
    card = make_card("MALI-1")

    CardService(db).set_status(card.id, "inactive", accountant)
    db.commit()

    db.refresh(card)
    assert card.status == "inactive"
    entry = db.query(CardHistory).filter(CardHistory.action == "status_change").one()
    assert entry.old_values["status"] == "active"
    assert entry.new_values["status"] == "inactive"
    assert entry.card_cid == "MALI-1"


def test_delete_keeps_a_history_entry(db, accountant, make_card) -> None:
    card = make_card("MALI-1")
    card_id = card.id
    service = CardService(db)

    assert service.delete(card_id, accountant) is True
    db.commit()

    assert db.query(Card).filter(Card.id == card_id).first() is None
    entry = db.query(CardHistory).filter(CardHistory.action == "delete").one()
    assert entry.card_cid == "MALI-1"
    assert entry.old_values["cid"] == "MALI-1"
    assert service.delete(card_id, accountant) is False


def test_bulk_delete_logs_each_card(db, accountant, make_card) -> None:
    cards = [make_card(f"MALI-{n}") for n in range(3)]
    kept = make_card("RDC-1", country="RDC")

    count = CardService(db).bulk_delete([c.id for c in cards] + [9999], accountant)
    db.commit()

    assert count == 3
    assert [c.cid for c in db.query(Card).all()] == [kept.cid]
    entries = db.query(CardHistory).filter(CardHistory.action == "bulk_delete").all()
    assert sorted(entry.card_cid for entry in entries) == ["MALI-0", "MALI-1", "MALI-2"]


def test_cancel_distribution_gives_back_usage(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    service = CardService(db)
    distribution, _ = service.distribute(
        DistributionRequest(amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id]),
        accountant,
    )
    db.commit()

    cancelled = service.cancel_distribution(distribution.id, accountant)
    db.commit()

    assert cancelled.cancelled_at is not None
    assert cancelled.cancelled_by == accountant.display_name
    db.refresh(card_a)
    db.refresh(card_b)
    assert card_a.monthly_used == Decimal("1500000")
    assert card_b.monthly_used == Decimal("0")
    assert card_a.last_recharge_date is None
    entries = db.query(CardHistory).filter(CardHistory.action == "distribution_cancel").all()
    assert {entry.card_cid for entry in entries} == {"MALI-A", "MALI-B"}
    assert all(entry.distribution_id == distribution.id for entry in entries)


def test_cancel_keeps_earlier_recharge_date(db, accountant, make_card) -> None:
    card = make_card("MALI-1")
    service = CardService(db)
    service.recharge(card.id, Decimal("100000"), accountant)
    distribution, _ = service.distribute(
        DistributionRequest(amount=Decimal("200000"), country="Mali", card_ids=[card.id]), accountant
    )
    db.commit()

    service.cancel_distribution(distribution.id, accountant)
    db.commit()

    db.refresh(card)
    recharged = db.query(CardHistory).filter(CardHistory.action == "recharge").one()
    assert card.monthly_used == Decimal("100000")
    assert card.last_recharge_date == recharged.created_at.date()


def test_cancel_twice_is_rejected(db, accountant, mali_cards) -> None:
    card_a, _ = mali_cards
    service = CardService(db)
    distribution, _ = service.distribute(
        DistributionRequest(amount=Decimal("100000"), country="Mali", card_ids=[card_a.id]), accountant
    )
    service.cancel_distribution(distribution.id, accountant)
    db.commit()

    with pytest.raises(StateTransitionError, match="already cancelled"):
        service.cancel_distribution(distribution.id, accountant)
    db.rollback()

    db.refresh(card_a)
    assert card_a.monthly_used == Decimal("1500000")


def test_cancel_after_reset_stops_at_zero(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    service = CardService(db)
    distribution, _ = service.distribute(
        DistributionRequest(amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id]),
        accountant,
    )
    db.commit()
    service.reset_usage(accountant, country="Mali")
    db.commit()

    service.cancel_distribution(distribution.id, accountant)
    db.commit()

    db.refresh(card_a)
    db.refresh(card_b)
    assert card_a.monthly_used == Decimal("0")
    assert card_b.monthly_used == Decimal("0")


def test_cancel_refunds_the_vault(db, accountant, mali_cards) -> None:
    card_a, card_b = mali_cards
    cash = CashAccountService(db)
    cash.deposit_to_vault(Decimal("1000000"), actor=accountant)
    db.commit()
    distribution, _ = CardService(db).distribute(
        DistributionRequest(amount=Decimal("900000"), country="Mali", card_ids=[card_a.id, card_b.id],
                            deduct_from_vault=True),
        accountant,
    )
    db.commit()

    CardService(db).cancel_distribution(distribution.id, accountant)
    db.commit()

    assert cash.get_vault().current_balance == Decimal("1000000")
    refund = db.query(CashTransaction).filter(CashTransaction.transaction_type == "distribution_cancel").one()
    assert refund.amount == Decimal("900000")
    assert refund.reference_id == distribution.id
