from __future__ import annotations

from decimal import Decimal

from backoffice.core.security import get_password_hash
from backoffice.schemas import ExpenseCreate
from backoffice.services.exchange_service import ExchangeTillService
from backoffice.services.expense_service import ExpenseService


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_login(client, make_user) -> None:
    make_user("cashier", "awa", hashed_password=get_password_hash("s3cret-pass"))

    bad = client.post("/api/v1/auth/login", json={"username": "awa", "password": "wrong"})
    assert bad.status_code == 401

    good = client.post("/api/v1/auth/login", json={"username": "awa", "password": "s3cret-pass"})
    assert good.status_code == 200
    token = good.json()["access_token"]

    me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["username"] == "awa"


def test_requests_without_token_are_rejected(client) -> None:
    assert client.get("/api/v1/cards").status_code == 401


def test_distribute_cards(client, make_user, make_card, auth_headers) -> None:
    accountant = make_user("accounting", "compta")
    card_a = make_card("MALI-A", monthly_used="1500000", recharge_limit="300000")
    card_b = make_card("MALI-B")

    response = client.post(
        "/api/v1/cards/distribute",
        json={"amount": "900000", "country": "Mali", "card_ids": [card_a.id, card_b.id]},
        headers=auth_headers(accountant),
    )

    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["total_distributed"]) == Decimal("800000")
    assert Decimal(body["remaining_amount"]) == Decimal("100000")
    assert body["cards_used"] == 2
    assert body["distribution_id"] is not None
    assert [line["cid"] for line in body["distributions"]] == ["MALI-A", "MALI-B"]


def test_distribute_requires_permission(client, make_user, make_card, auth_headers) -> None:
    cashier = make_user("cashier", "awa")
    card = make_card("MALI-A")

    response = client.post(
        "/api/v1/cards/distribute",
        json={"amount": "1000", "country": "Mali", "card_ids": [card.id]},
        headers=auth_headers(cashier),
    )

    assert response.status_code == 403


def test_distribute_without_amount_is_bad_request(client, make_user, make_card, auth_headers) -> None:
    accountant = make_user("accounting", "compta")
    card = make_card("MALI-A")

    response = client.post(
        "/api/v1/cards/distribute",
        json={"country": "Mali", "card_ids": [card.id]},
        headers=auth_headers(accountant),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Amount and country required"


def test_validation_out_of_order_is_conflict(client, db, make_user, auth_headers) -> None:
    cashier = make_user("cashier", "awa")
    director = make_user("director", "dg")
    expense = ExpenseService(db).create(
        ExpenseCreate(description="Taxi", amount=Decimal("30000"), category="Transport"), cashier
    )
    db.commit()

    response = client.post(
        f"/api/v1/expenses/{expense.id}/validate",
        json={"approved": True, "stage": "director"},
        headers=auth_headers(director),
    )

    assert response.status_code == 409
    assert "not allowed in current state" in response.json()["detail"]


def test_rejection_without_reason_is_bad_request(client, db, make_user, auth_headers) -> None:
    cashier = make_user("cashier", "awa")
    accountant = make_user("accounting", "compta")
    expense = ExpenseService(db).create(
        ExpenseCreate(description="Taxi", amount=Decimal("30000"), category="Transport"), cashier
    )
    db.commit()

    response = client.post(
        f"/api/v1/expenses/{expense.id}/validate",
        json={"approved": False, "stage": "accounting"},
        headers=auth_headers(accountant),
    )

    assert response.status_code == 400


def test_exchange_purchase(client, db, make_user, auth_headers) -> None:
    accountant = make_user("accounting", "tresor")
    ExchangeTillService(db).get_till(None, "XAF").balance = Decimal("2000000")
    db.commit()

    response = client.post(
        "/api/v1/exchange/purchase",
        json={
            "paying_currency": "XAF",
            "bought_currency": "USD",
            "paid_amount": "1000000",
            "purchase_rate": "650",
            "transport_fees": "10",
            "handling_fees": "5",
            "banknote_fees": "5",
            "deduct_flags": {"deduct_from_xaf": True},
        },
        headers=auth_headers(accountant),
    )

    assert response.status_code == 200
    assert Decimal(response.json()["effective_rate"]) == Decimal("658.56")
    assert Decimal(response.json()["total_available"]) == Decimal("1518.46")


def test_audit_trail_lists_failed_logins(client, make_user, auth_headers) -> None:
    auditor = make_user("auditor", "controle")
    client.post("/api/v1/auth/login", json={"username": "ghost", "password": "nope"})

    response = client.get("/api/v1/auth/audit-logs?action=LOGIN_FAILED", headers=auth_headers(auditor))

    assert response.status_code == 200
    assert [row["status"] for row in response.json()] == ["failure"]
    assert client.get("/api/v1/auth/audit-logs", headers=auth_headers(make_user("cashier"))).status_code == 403


def test_padded_duplicate_cid_is_bad_request(client, make_user, make_card, auth_headers) -> None:
    accountant = make_user("accounting", "compta")
    make_card("MALI-A")

    response = client.post(
        "/api/v1/cards", json={"cid": " MALI-A ", "country": "Mali"}, headers=auth_headers(accountant)
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Card MALI-A already exists"


def test_cancel_distribution(client, make_user, make_card, auth_headers) -> None:
    accountant = make_user("accounting", "compta")
    director = make_user("director", "dg")
    card = make_card("MALI-A", monthly_used="1500000", recharge_limit="300000")
    distributed = client.post(
        "/api/v1/cards/distribute",
        json={"amount": "300000", "country": "Mali", "card_ids": [card.id]},
        headers=auth_headers(accountant),
    ).json()
    url = f"/api/v1/cards/distributions/{distributed['distribution_id']}/cancel"

    assert client.post(url, headers=auth_headers(accountant)).status_code == 403

    response = client.post(url, headers=auth_headers(director))
    assert response.status_code == 200
    assert response.json()["cancelled_by"] == director.display_name
    assert response.json()["cancelled_at"] is not None

    again = client.post(url, headers=auth_headers(director))
    assert again.status_code == 409
    assert "already cancelled" in again.json()["detail"]

    card_view = client.get(f"/api/v1/cards/{card.id}", headers=auth_headers(director)).json()
    assert Decimal(card_view["monthly_used"]) == Decimal("1500000")
    assert client.post("/api/v1/cards/distributions/9999/cancel", headers=auth_headers(director)).status_code == 404
