from __future__ import annotations

from datetime import datetime

import pytest

from bookkeeping import models
from bookkeeping.core.exceptions import IntegrityViolationError, InvalidStateError
from bookkeeping.schemas import AccountTreeNode
from bookkeeping.services.account_service import AccountService, aggregate, build_tree
from bookkeeping.services.balance_service import BalanceService
from bookkeeping.services.currency_service import CurrencyService
from bookkeeping.services.transaction_service import TransactionService


def _node(id: int, parent_id=None, sort_order: int = 0, is_group: bool = False, balance: float = 0.0, currency="CNY"):
    return AccountTreeNode(
        id=id,
        name=f"acc-{id}",
        type="asset",
        account_class="real",
        is_group=is_group,
        currency=None if is_group else currency,
        parent_id=parent_id,
        sort_order=sort_order,
        balance=balance,
    )


def _find(nodes, name):
    for node in nodes:
        if node.name == name:
            return node
        hit = _find(node.children, name)
        if hit is not None:
            return hit
    return None


def test_build_tree_sorts_stably_per_level():
    nodes = [
        _node(1, is_group=True),
        _node(2, parent_id=1, sort_order=2),
        _node(3, parent_id=1, sort_order=1),
        _node(4, parent_id=1, sort_order=1),
        _node(5, sort_order=-1),
    ]
    roots = build_tree(nodes)
    assert [n.id for n in roots] == [5, 1]
    assert [n.id for n in roots[0].children] == []
    assert [n.id for n in roots[1].children] == [3, 4, 2]


def test_aggregate_converts_into_group_currency():
    rates = {"USD": {"CNY": 7.0}}
    nodes = [
        _node(1, is_group=True),
        _node(2, parent_id=1, balance=100, currency="CNY"),
        _node(3, parent_id=1, is_group=True),
        _node(4, parent_id=3, balance=10, currency="USD"),
    ]
    roots = build_tree(nodes)
    total = aggregate(roots, "CNY", rates)

    top = roots[0]
    inner = top.children[1]
    assert inner.balance == pytest.approx(70)
    assert inner.currency == "CNY"
    assert top.balance == pytest.approx(170)
    assert total == pytest.approx(170)
    # leaves keep their own currency and balance
    assert top.children[0].balance == 100
    assert inner.children[0].currency == "USD"


def test_service_tree_rolls_up_leaf_balances(db_session, make_account):
    CurrencyService(db_session).upsert_rate("USD", "CNY", 7.2)
    cash = make_account("Cash", is_group=True)
    make_account("Wallet", parent_id=cash.id, currency="CNY", opening_balance=100, opening_date=datetime(2024, 1, 1))
    make_account("USD card", parent_id=cash.id, currency="USD", opening_balance=10, opening_date=datetime(2024, 1, 1))

    roots = AccountService(db_session).get_tree(target_currency="CNY")
    group = _find(roots, "Cash")
    assert group.balance == pytest.approx(172)
    assert group.currency == "CNY"
    assert _find(roots, "USD card").balance == pytest.approx(10)


def test_child_inherits_type_and_class(db_session, make_account):
    expenses = make_account("Living", "expense", is_group=True)
    food = AccountService(db_session).create({"name": "Food", "parent_id": expenses.id})
    assert food.type == models.AccountType.EXPENSE
    assert food.account_class == models.AccountClass.NOMINAL
    assert food.currency is None


def test_account_rules(db_session, make_account):
    svc = AccountService(db_session)
    wallet = make_account("Wallet")
    with pytest.raises(IntegrityViolationError):
        svc.create({"name": "Odd", "type": "asset", "account_class": "nominal"})
    with pytest.raises(IntegrityViolationError):
        svc.create({"name": "Orphan"})
    with pytest.raises(IntegrityViolationError):
        svc.create({"name": "Child", "parent_id": wallet.id})
    with pytest.raises(IntegrityViolationError):
        svc.create({"name": "Salary", "type": "income", "account_class": "nominal", "opening_balance": 10})


def test_create_with_opening_balance_api(client):
    res = client.post(
        "/api/accounts",
        json={
            "name": "Checking",
            "type": "asset",
            "account_class": "real",
            "currency": "cny",
            "opening_balance": 1000,
            "opening_date": "2024-01-01T00:00:00",
        },
    )
    assert res.status_code == 201
    acc = res.json()
    assert acc["currency"] == "CNY"

    bal = client.get(f"/api/accounts/{acc['id']}/balance").json()
    assert bal["balance"] == pytest.approx(1000)

    cals = client.get("/api/calibrations", params={"account_id": acc["id"]}).json()
    assert len(cals) == 1 and cals[0]["is_opening"] is True

    txs = client.get("/api/transactions", params={"account_id": acc["id"]}).json()
    assert txs["total"] == 1
    assert txs["items"][0]["transaction_type"] == "opening"


def test_liability_opening_is_negative(client):
    res = client.post(
        "/api/accounts",
        json={"name": "Credit card", "type": "liability", "account_class": "real", "opening_balance": 5000},
    )
    assert res.status_code == 201
    bal = client.get(f"/api/accounts/{res.json()['id']}/balance").json()
    assert bal["balance"] == pytest.approx(-5000)


def test_invalid_account_payloads_api(client):
    assert client.post("/api/accounts", json={"name": "X", "type": "asset", "account_class": "nominal"}).status_code == 422
    assert client.post("/api/accounts", json={"name": "", "type": "asset", "account_class": "real"}).status_code == 422


def test_delete_rules(client, db_session, make_account):
    wallet = make_account("Wallet")
    food = make_account("Food", "expense")
    spare = make_account("Spare")
    TransactionService(db_session).create(
        {"from_account_id": wallet.id, "to_account_id": food.id, "amount": 12, "occurred_at": datetime(2024, 1, 2)}
    )
    system = db_session.query(models.Account).filter(models.Account.is_system.is_(True)).one()

    assert client.delete(f"/api/accounts/{wallet.id}").status_code == 409
    assert client.delete(f"/api/accounts/{system.id}").status_code == 409
    assert client.delete(f"/api/accounts/{spare.id}").status_code == 204
    assert client.get(f"/api/accounts/{spare.id}").status_code == 404


def test_move_and_deactivate_rules(client, db_session, make_account):
    outer = make_account("Outer", is_group=True)
    inner = make_account("Inner", parent_id=outer.id, is_group=True)
    system = db_session.query(models.Account).filter(models.Account.is_system.is_(True)).one()

    assert client.patch(f"/api/accounts/{outer.id}", json={"parent_id": inner.id}).status_code == 422
    assert client.patch(f"/api/accounts/{system.id}/active", json={"is_active": False}).status_code == 409

    res = client.patch(f"/api/accounts/{inner.id}/active", json={"is_active": False})
    assert res.status_code == 200 and res.json()["is_active"] is False
    active_names = {a["name"] for a in client.get("/api/accounts", params={"is_active": True}).json()}
    assert "Inner" not in active_names


def test_merge_moves_history(client, db_session, make_account):
    old = make_account("Old wallet", opening_balance=100, opening_date=datetime(2024, 1, 1))
    new = make_account("New wallet")
    food = make_account("Food", "expense")
    TransactionService(db_session).create(
        {"from_account_id": old.id, "to_account_id": food.id, "amount": 30, "occurred_at": datetime(2024, 1, 5)}
    )

    res = client.post("/api/accounts/merge", json={"source_id": old.id, "target_id": new.id})
    assert res.status_code == 200
    assert res.json()["moved_transactions"] == 2
    assert res.json()["moved_calibrations"] == 1

    assert client.get(f"/api/accounts/{old.id}").json()["is_active"] is False
    assert client.get(f"/api/accounts/{new.id}/balance").json()["balance"] == pytest.approx(70)

    usd = make_account("USD card", currency="USD")
    assert client.post("/api/accounts/merge", json={"source_id": new.id, "target_id": usd.id}).status_code == 422


def test_tree_endpoint(client, make_account):
    group = make_account("Banks", is_group=True)
    make_account("Checking", parent_id=group.id, opening_balance=250, opening_date=datetime(2024, 1, 1))
    res = client.get("/api/accounts/tree", params={"currency": "cny"})
    assert res.status_code == 200
    banks = _find([AccountTreeNode.model_validate(n) for n in res.json()], "Banks")
    assert banks.balance == pytest.approx(250)
    assert banks.children[0].name == "Checking"


def test_currency_subaccount_splits_a_leaf(db_session, make_account):
    bank = make_account("Bank", opening_balance=1000, opening_date=datetime(2024, 1, 1))
    food = make_account("Food", "expense")
    TransactionService(db_session).create(
        {"from_account_id": bank.id, "to_account_id": food.id, "amount": 200, "occurred_at": datetime(2024, 1, 10)}
    )
    svc = AccountService(db_session)

    created, moved = svc.add_currency_subaccount(bank.id, "usd")
    assert created == ["CNY", "USD"]
    assert moved == 2

    bank = svc.get(bank.id)
    assert bank.is_group is True
    assert bank.currency is None
    cny = svc.find_subaccount_by_currency(bank.id, "CNY")
    usd = svc.find_subaccount_by_currency(bank.id, "USD")
    assert cny.name == "CNY"
    assert (usd.type, usd.account_class) == (models.AccountType.ASSET, models.AccountClass.REAL)
    # calibrations follow the postings, so the balance survives the split
    assert BalanceService(db_session).balance_at(cny.id, datetime(2024, 2, 1)) == pytest.approx(800)

    assert svc.add_currency_subaccount(bank.id, "USD") == ([], 0)
    assert svc.add_currency_subaccount(bank.id, "HKD") == (["HKD"], 0)


def test_currency_subaccount_rules(db_session, make_account):
    food = make_account("Food", "expense")
    svc = AccountService(db_session)
    with pytest.raises(IntegrityViolationError):
        svc.add_currency_subaccount(food.id, "USD")
    equity = db_session.query(models.Account).filter(models.Account.is_system.is_(True)).first()
    with pytest.raises(InvalidStateError):
        svc.add_currency_subaccount(equity.id, "USD")


def test_transactions_route_to_currency_leaf(db_session, make_account):
    bank = make_account("Bank")
    food = make_account("Food", "expense")
    ledger = TransactionService(db_session)
    svc = AccountService(db_session)

    usd_tx = ledger.create(
        {
            "from_account_id": bank.id,
            "to_account_id": food.id,
            "amount": 50,
            "occurred_at": datetime(2024, 1, 5),
            "from_currency": "USD",
            "to_currency": "USD",
        }
    )
    usd = svc.find_subaccount_by_currency(bank.id, "USD")
    assert usd_tx.from_account_id == usd.id
    # nominal accounts carry no currency and are used as given
    assert usd_tx.to_account_id == food.id

    cny_tx = ledger.create(
        {
            "from_account_id": bank.id,
            "to_account_id": food.id,
            "amount": 30,
            "occurred_at": datetime(2024, 1, 6),
            "from_currency": "CNY",
        }
    )
    assert cny_tx.from_account_id == svc.find_subaccount_by_currency(bank.id, "CNY").id

    with pytest.raises(IntegrityViolationError):
        ledger.create({"from_account_id": bank.id, "to_account_id": food.id, "amount": 10, "occurred_at": datetime(2024, 1, 7)})


def test_currency_subaccount_endpoint(client, make_account):
    bank = make_account("Bank")
    res = client.post(f"/api/accounts/{bank.id}/currency-subaccounts", json={"currency": "hkd"})
    assert res.status_code == 200
    assert res.json() == {"account_id": bank.id, "created": ["CNY", "HKD"], "moved_transactions": 0}

    tree = client.get("/api/accounts/tree").json()
    node = next(n for n in tree if n["id"] == bank.id)
    assert sorted(c["name"] for c in node["children"]) == ["CNY", "HKD"]
    assert client.post("/api/accounts/99999/currency-subaccounts", json={"currency": "USD"}).status_code == 404
