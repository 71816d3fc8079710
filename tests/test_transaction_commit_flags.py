from datetime import datetime, timedelta

import crud
import reservations
from models import CheckoutIn, ItemIn, UserIn
from orm import UserORM

NOW = datetime(2030, 7, 1, 9, 0)


def _member(db_session):
    user = crud.create_user(db_session, UserIn(name="Cora", email="cora@example.com"))
    return db_session.get(UserORM, user.id)


def test_create_item_commit_false_requires_manual_commit(db_session):
    body = ItemIn(name="Tablet", category="Device", sku="T-001", total_quantity=2)
    created = crud.create_item(db_session, body, commit=False)

    db_session.commit()
    db_session.expire_all()

    loaded = crud.get_item(db_session, created.id)
    assert loaded is not None
    assert loaded.sku == "T-001"
    assert loaded.available_quantity == 2


def test_create_item_commit_false_rollback_discards_change(db_session):
    body = ItemIn(name="Tablet", category="Device", sku="T-002")
    created = crud.create_item(db_session, body, commit=False)

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_item(db_session, created.id) is None


def test_checkout_commit_false_rollback_restores_quantity(db_session, recorder):
    user = _member(db_session)
    item = crud.create_item(db_session, ItemIn(name="Camera", category="AV", total_quantity=2))

    t = reservations.checkout(
        db_session,
        user,
        CheckoutIn(item=item.id, quantity=2, purpose="x", expected_return_date=NOW + timedelta(days=1)),
        notifier=recorder,
        now=NOW,
        commit=False,
    )
    assert t.status == "active"

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_item(db_session, item.id).available_quantity == 2
    assert crud.list_transactions_filtered(
        db_session, status=None, type=None, user_id=None, item_id=item.id,
        sort="created_at", order="asc", limit=50, offset=0, now=NOW,
    ) == []
    # nothing was committed, so nothing was announced
    assert recorder.events == []


def test_return_commit_false_rollback_keeps_loan_open(db_session):
    user = _member(db_session)
    item = crud.create_item(db_session, ItemIn(name="Camera", category="AV", total_quantity=2))
    t = reservations.checkout(
        db_session,
        user,
        CheckoutIn(item=item.id, quantity=1, purpose="x", expected_return_date=NOW + timedelta(days=1)),
        now=NOW,
    )

    reservations.return_transaction(db_session, user, t.id, now=NOW, commit=False)
    db_session.rollback()
    db_session.expire_all()

    assert crud.get_transaction_orm(db_session, t.id).status == "active"
    assert crud.get_item(db_session, item.id).available_quantity == 1
