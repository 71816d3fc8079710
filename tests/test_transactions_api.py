from datetime import datetime, timedelta

import reservations
from models import CheckoutIn
from time_utils import utcnow


def _due(days=3):
    return (utcnow() + timedelta(days=days)).replace(microsecond=0).isoformat()


def _checkout(client, user, headers, item_id, quantity=1, **fields):
    body = {"item": item_id, "quantity": quantity, "purpose": "Workshop", "expectedReturnDate": _due()}
    body.update(fields)
    return client.post("/transactions/checkout", json=body, headers=headers(user))


def test_checkout_and_return_via_api(client, make_item, member, headers):
    item = make_item(total_quantity=5)

    r = _checkout(client, member, headers, item.id, 2, destination="Studio B", checkoutCondition="good")
    assert r.status_code == 201, r.text
    tx = r.json()
    assert tx["status"] == "active"
    assert tx["destination"] == "Studio B"
    assert tx["checkout_condition"] == "good"
    assert tx["transaction_number"].startswith("TXN-")

    r = client.get(f"/items/{item.id}", headers=headers(member))
    assert r.json()["available_quantity"] == 3

    r = client.post(
        f"/transactions/{tx['id']}/return",
        json={"returnCondition": "damaged", "returnNotes": "cracked lens"},
        headers=headers(member),
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "returned"
    assert r.json()["return_condition"] == "damaged"

    r = client.get(f"/items/{item.id}", headers=headers(member))
    assert r.json()["available_quantity"] == 5

    r = client.post(f"/transactions/{tx['id']}/return", headers=headers(member))
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidStateTransition"
    assert r.json()["current"] == "returned"


def test_insufficient_quantity_error_body(client, make_item, member, headers):
    item = make_item(total_quantity=2)

    r = _checkout(client, member, headers, item.id, 3)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "InsufficientQuantity"
    assert body["requested"] == 3
    assert body["available"] == 2


def test_checkout_validation_errors(client, make_item, member, headers):
    item = make_item(total_quantity=2)

    r = _checkout(client, member, headers, item.id, 0)
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"

    r = _checkout(client, member, headers, item.id, 1, purpose="   ")
    assert r.status_code == 400

    r = _checkout(client, member, headers, item.id, 1, expectedReturnDate=(utcnow() - timedelta(days=1)).isoformat())
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"

    r = _checkout(client, member, headers, "missing", 1)
    assert r.status_code == 404


def test_approval_flow_via_api(client, make_item, member, manager, headers):
    item = make_item(total_quantity=2, requires_approval=True)

    r = _checkout(client, member, headers, item.id, 1)
    assert r.status_code == 201, r.text
    tx = r.json()
    assert tx["status"] == "pending"
    assert tx["approval_required"] is True

    r = client.post(f"/transactions/{tx['id']}/approve", headers=headers(member))
    assert r.status_code == 403

    r = client.post(f"/transactions/{tx['id']}/approve", json={"notes": "enjoy"}, headers=headers(manager))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "active"
    assert r.json()["approval_notes"] == "enjoy"

    r = client.post(f"/transactions/{tx['id']}/approve", headers=headers(manager))
    assert r.status_code == 400


def test_reject_and_cancel_via_api(client, make_item, member, manager, headers):
    item = make_item(total_quantity=3, requires_approval=True)
    first = _checkout(client, member, headers, item.id, 1).json()
    second = _checkout(client, member, headers, item.id, 2).json()

    r = client.post(f"/transactions/{first['id']}/reject", json={}, headers=headers(manager))
    assert r.status_code == 400

    r = client.post(f"/transactions/{first['id']}/reject", json={"reason": "broken"}, headers=headers(manager))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "rejected"

    r = client.post(f"/transactions/{second['id']}/cancel", headers=headers(member))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "cancelled"

    r = client.get(f"/items/{item.id}", headers=headers(member))
    assert r.json()["available_quantity"] == 3


def test_members_only_see_their_own_transactions(client, make_item, member, other_member, manager, headers):
    item = make_item(total_quantity=5)
    mine = _checkout(client, member, headers, item.id).json()
    theirs = _checkout(client, other_member, headers, item.id).json()

    r = client.get("/transactions", headers=headers(member))
    assert [t["id"] for t in r.json()] == [mine["id"]]

    # user_id filter cannot widen a member's view
    r = client.get(f"/transactions?user_id={other_member.id}", headers=headers(member))
    assert [t["id"] for t in r.json()] == [mine["id"]]

    r = client.get(f"/transactions/{theirs['id']}", headers=headers(member))
    assert r.status_code == 403

    r = client.get("/transactions?sort=created_at&order=asc", headers=headers(manager))
    assert {t["id"] for t in r.json()} == {mine["id"], theirs["id"]}

    r = client.get(f"/transactions?user_id={other_member.id}", headers=headers(manager))
    assert [t["id"] for t in r.json()] == [theirs["id"]]


def test_overdue_filter_and_report(client, db_session, make_item, member, manager, orm_user, headers):
    item = make_item(total_quantity=5)
    past = utcnow() - timedelta(days=10)
    late = reservations.checkout(
        db_session,
        orm_user(member),
        CheckoutIn(item=item.id, purpose="old", expected_return_date=past + timedelta(days=2, hours=1)),
        now=past,
    )
    current = _checkout(client, member, headers, item.id).json()

    r = client.get("/transactions?status=overdue", headers=headers(manager))
    assert [t["id"] for t in r.json()] == [late.id]
    assert r.json()[0]["status"] == "overdue"
    assert r.json()[0]["days_overdue"] == 8

    r = client.get("/transactions?status=active", headers=headers(manager))
    assert [t["id"] for t in r.json()] == [current["id"]]

    r = client.get("/transactions/overdue", headers=headers(member))
    assert [t["id"] for t in r.json()] == [late.id]

    # returning an overdue loan is allowed and charges the late fee
    r = client.post(f"/transactions/{late.id}/return", headers=headers(member))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "returned"
    assert len(r.json()["penalties"]) == 1


def test_bulk_checkout_via_api(client, make_item, member, headers):
    cam = make_item(name="Camera", total_quantity=2)
    mic = make_item(name="Mic", total_quantity=1)

    r = client.post(
        "/transactions/checkout/bulk",
        json={
            "items": [{"item": cam.id, "quantity": 1}, {"item": mic.id, "quantity": 2}],
            "purpose": "Panel",
            "expectedReturnDate": _due(),
        },
        headers=headers(member),
    )
    assert r.status_code == 400
    assert r.json()["error"] == "InsufficientQuantity"
    assert len(r.json()["errors"]) == 1

    r = client.get(f"/items/{cam.id}", headers=headers(member))
    assert r.json()["available_quantity"] == 2

    r = client.post(
        "/transactions/checkout/bulk",
        json={
            "items": [{"item": cam.id, "quantity": 1}, {"item": mic.id, "quantity": 1}],
            "purpose": "Panel",
            "expectedReturnDate": _due(),
        },
        headers=headers(member),
    )
    assert r.status_code == 201, r.text
    assert len(r.json()) == 2
    assert r.json()[0]["batch_id"] == r.json()[1]["batch_id"]


def test_bulk_approve_via_api(client, make_item, member, manager, headers):
    item = make_item(total_quantity=3, requires_approval=True)
    a = _checkout(client, member, headers, item.id).json()
    b = _checkout(client, member, headers, item.id).json()

    r = client.post("/transactions/approve/bulk", json={"ids": [a["id"], b["id"], "nope"]}, headers=headers(manager))
    assert r.status_code == 200, r.text
    body = r.json()
    assert {t["id"] for t in body["approved"]} == {a["id"], b["id"]}
    assert body["errors"] == [{"id": "nope", "error": "NotFound", "detail": "Transaction not found"}]


def test_extension_via_api(client, make_item, member, manager, headers):
    item = make_item(total_quantity=3)
    tx = _checkout(client, member, headers, item.id).json()
    new_date = (datetime.fromisoformat(tx["expected_return_date"]) + timedelta(days=4)).isoformat()

    r = client.post(
        f"/transactions/{tx['id']}/extend",
        json={"newReturnDate": new_date, "reason": "project slipped"},
        headers=headers(member),
    )
    assert r.status_code == 200, r.text
    ext = r.json()["extensions"][0]

    r = client.post(f"/transactions/{tx['id']}/extensions/{ext['id']}/approve", headers=headers(member))
    assert r.status_code == 403

    r = client.post(
        f"/transactions/{tx['id']}/extensions/{ext['id']}/approve", json={"notes": "fine"}, headers=headers(manager)
    )
    assert r.status_code == 200, r.text
    assert datetime.fromisoformat(r.json()["expected_return_date"]) == datetime.fromisoformat(new_date)
    assert r.json()["extensions"][0]["status"] == "approved"


def test_health_and_root(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/").status_code == 200


def test_manual_overdue_sweep(client, db_session, make_item, member, manager, orm_user, headers):
    item = make_item(total_quantity=2)
    past = utcnow() - timedelta(days=5)
    reservations.checkout(
        db_session,
        orm_user(member),
        CheckoutIn(item=item.id, purpose="old", expected_return_date=past + timedelta(days=1)),
        now=past,
    )

    assert client.post("/transactions/overdue/sweep", headers=headers(member)).status_code == 403

    r = client.post("/transactions/overdue/sweep", headers=headers(manager))
    assert r.status_code == 200, r.text
    assert r.json() == {"notified": 1}

    r = client.get("/notifications", headers=headers(member))
    assert [n["type"] for n in r.json()] == ["overdue_alert"]


def test_approve_unknown_transaction_is_not_found(client, manager, headers):
    r = client.post("/transactions/no-such-id/approve", headers=headers(manager))
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"

    r = client.post("/transactions/no-such-id/reject", json={"reason": "gone"}, headers=headers(manager))
    assert r.status_code == 404


def test_locked_database_on_cancel_is_retried(client, make_item, member, headers, monkeypatch):
    from sqlalchemy.exc import OperationalError

    item = make_item(total_quantity=2, requires_approval=True)
    tx = _checkout(client, member, headers, item.id).json()

    real_cancel = reservations.cancel
    calls = []

    def locked_once(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE transactions", {}, Exception("database is locked"))
        return real_cancel(*args, **kwargs)

    monkeypatch.setattr(reservations, "cancel", locked_once)

    r = client.post(f"/transactions/{tx['id']}/cancel", headers=headers(member))
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "cancelled"
    assert len(calls) == 2

    r = client.get(f"/items/{item.id}", headers=headers(member))
    assert r.json()["available_quantity"] == 2
