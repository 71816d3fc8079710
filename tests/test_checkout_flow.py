from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import crud
import reservations
from errors import Forbidden, InsufficientQuantity, InvalidStateTransition, NotFound, ValidationError
from models import CheckoutIn, ExtendIn, ReturnIn

NOW = datetime(2030, 1, 10, 9, 0)


def _checkout(db_session, user, item, quantity=1, *, days=3, now=NOW, notifier=None, **fields):
    body = CheckoutIn(
        item=item.id,
        quantity=quantity,
        purpose=fields.pop("purpose", "Field shoot"),
        expected_return_date=now + timedelta(days=days),
        **fields,
    )
    return reservations.checkout(db_session, user, body, notifier=notifier, now=now)


def _available(db_session, item_id):
    db_session.expire_all()
    return crud.get_item(db_session, item_id).available_quantity


def test_checkout_without_approval_is_active_immediately(db_session, make_item, member, orm_user, recorder):
    item = make_item(total_quantity=5)

    t = _checkout(db_session, orm_user(member), item, 2, notifier=recorder)

    assert t.status == "active"
    assert t.approval_required is False
    assert t.transaction_number == "TXN-20300110-0001"
    assert t.item_name == "Camera"
    assert _available(db_session, item.id) == 3
    assert recorder.names() == ["checkout_active"]


def test_checkout_requiring_approval_reserves_at_request_time(
    db_session, make_item, member, manager, orm_user, recorder
):
    item = make_item(total_quantity=2, requires_approval=True)

    t = _checkout(db_session, orm_user(member), item, 2, notifier=recorder)
    assert t.status == "pending"
    assert _available(db_session, item.id) == 0

    # nothing left for a second request while the first waits for approval
    with pytest.raises(InsufficientQuantity):
        _checkout(db_session, orm_user(manager), item, 1)
    db_session.rollback()

    approved = reservations.approve(db_session, orm_user(manager), t.id, "ok", notifier=recorder, now=NOW)
    assert approved.status == "active"
    assert approved.approved_by == manager.id
    assert approved.approval_notes == "ok"
    # approving moves no quantity
    assert _available(db_session, item.id) == 0
    assert recorder.names() == ["checkout_requested", "approved"]


def test_insufficient_quantity_leaves_state_unchanged(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=2)

    with pytest.raises(InsufficientQuantity) as exc_info:
        _checkout(db_session, orm_user(member), item, 3)
    db_session.rollback()

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert _available(db_session, item.id) == 2
    assert crud.list_transactions_filtered(
        db_session, status=None, type=None, user_id=None, item_id=None,
        sort="created_at", order="asc", limit=50, offset=0, now=NOW,
    ) == []


def test_reject_releases_quantity(db_session, make_item, member, manager, orm_user):
    item = make_item(total_quantity=3, requires_approval=True)
    t = _checkout(db_session, orm_user(member), item, 2)

    rejected = reservations.reject(db_session, orm_user(manager), t.id, "not this week", now=NOW)

    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "not this week"
    assert rejected.rejected_by == manager.id
    assert _available(db_session, item.id) == 3


def test_reject_requires_reason(db_session, make_item, member, manager, orm_user):
    item = make_item(total_quantity=3, requires_approval=True)
    t = _checkout(db_session, orm_user(member), item, 1)

    with pytest.raises(ValidationError):
        reservations.reject(db_session, orm_user(manager), t.id, "   ", now=NOW)
    assert _available(db_session, item.id) == 2


def test_cancel_by_requester_releases_quantity(db_session, make_item, member, other_member, orm_user):
    item = make_item(total_quantity=3, requires_approval=True)
    t = _checkout(db_session, orm_user(member), item, 2)

    with pytest.raises(Forbidden):
        reservations.cancel(db_session, orm_user(other_member), t.id, now=NOW)

    cancelled = reservations.cancel(db_session, orm_user(member), t.id, now=NOW)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at == NOW
    assert _available(db_session, item.id) == 3


def test_active_transaction_cannot_be_cancelled(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=3)
    t = _checkout(db_session, orm_user(member), item, 1)

    with pytest.raises(InvalidStateTransition):
        reservations.cancel(db_session, orm_user(member), t.id, now=NOW)
    assert _available(db_session, item.id) == 2


def test_users_cannot_approve(db_session, make_item, member, other_member, orm_user):
    item = make_item(total_quantity=3, requires_approval=True)
    t = _checkout(db_session, orm_user(member), item, 1)

    with pytest.raises(Forbidden):
        reservations.approve(db_session, orm_user(other_member), t.id, now=NOW)


def test_return_releases_quantity_once(db_session, make_item, member, orm_user, recorder):
    item = make_item(total_quantity=3)
    t = _checkout(db_session, orm_user(member), item, 2)
    at = NOW + timedelta(days=1)

    returned = reservations.return_transaction(
        db_session, orm_user(member), t.id, ReturnIn(return_condition="fair"), notifier=recorder, now=at
    )
    assert returned.status == "returned"
    assert returned.actual_return_date == at
    assert returned.return_condition == "fair"
    assert returned.returned_by == member.id
    assert returned.penalties == []
    assert _available(db_session, item.id) == 3

    with pytest.raises(InvalidStateTransition):
        reservations.return_transaction(db_session, orm_user(member), t.id, now=at)
    db_session.rollback()
    assert _available(db_session, item.id) == 3
    assert recorder.names() == ["returned"]


def test_late_return_adds_late_fee(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=1)
    t = _checkout(db_session, orm_user(member), item, 1, days=2)

    returned = reservations.return_transaction(
        db_session, orm_user(member), t.id, now=NOW + timedelta(days=4, hours=3)
    )

    assert returned.status == "returned"
    assert returned.return_condition == "good"
    assert len(returned.penalties) == 1
    fee = returned.penalties[0]
    assert fee.type == "late_fee"
    # 2 days and 3 hours late rounds up to 3 days
    assert fee.amount == Decimal("15")
    assert fee.is_paid is False


def test_users_return_only_their_own(db_session, make_item, member, other_member, manager, orm_user):
    item = make_item(total_quantity=2)
    t = _checkout(db_session, orm_user(member), item, 1)

    with pytest.raises(Forbidden):
        reservations.return_transaction(db_session, orm_user(other_member), t.id, now=NOW)

    returned = reservations.return_transaction(db_session, orm_user(manager), t.id, now=NOW)
    assert returned.returned_by == manager.id


def test_pending_transaction_cannot_be_returned(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=2, requires_approval=True)
    t = _checkout(db_session, orm_user(member), item, 1)

    with pytest.raises(InvalidStateTransition) as exc_info:
        reservations.return_transaction(db_session, orm_user(member), t.id, now=NOW)
    assert exc_info.value.current == "pending"
    assert _available(db_session, item.id) == 1


@pytest.mark.parametrize(
    "item_fields, days, message",
    [
        ({"is_checkoutable": False}, 3, "not available"),
        ({"status": "maintenance"}, 3, "not available"),
        ({}, -1, "future"),
        ({"max_checkout_days": 2}, 5, "at most 2"),
    ],
)
def test_checkout_validation_performs_no_mutation(
    db_session, make_item, member, orm_user, item_fields, days, message
):
    item = make_item(total_quantity=2, **item_fields)

    with pytest.raises(ValidationError) as exc_info:
        _checkout(db_session, orm_user(member), item, 1, days=days)

    assert message in exc_info.value.message
    assert _available(db_session, item.id) == 2


def test_checkout_unknown_item_is_not_found(db_session, member, orm_user):
    body = CheckoutIn(item="missing", purpose="x", expected_return_date=NOW + timedelta(days=1))
    with pytest.raises(NotFound):
        reservations.checkout(db_session, orm_user(member), body, now=NOW)


def test_checkout_requires_permission(db_session, make_user, make_item, orm_user):
    viewer = make_user("Vic Viewer", can_checkout=False)
    item = make_item(total_quantity=2)

    with pytest.raises(Forbidden):
        _checkout(db_session, orm_user(viewer), item, 1)
    assert _available(db_session, item.id) == 2


def test_always_require_approval_setting(db_session, make_item, member, orm_user, monkeypatch):
    import config

    monkeypatch.setattr(config, "ALWAYS_REQUIRE_APPROVAL", True)
    item = make_item(total_quantity=2)

    t = _checkout(db_session, orm_user(member), item, 1)
    assert t.status == "pending"
    assert t.approval_required is True


def test_transaction_numbers_count_up_within_a_day(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=5)

    first = _checkout(db_session, orm_user(member), item, 1)
    second = _checkout(db_session, orm_user(member), item, 1)
    next_day = _checkout(db_session, orm_user(member), item, 1, now=NOW + timedelta(days=1))

    assert first.transaction_number == "TXN-20300110-0001"
    assert second.transaction_number == "TXN-20300110-0002"
    assert next_day.transaction_number == "TXN-20300111-0001"


def test_extension_request_and_approval_moves_due_date(
    db_session, make_item, member, manager, orm_user, recorder
):
    item = make_item(total_quantity=2)
    t = _checkout(db_session, orm_user(member), item, 1, days=2)
    new_date = NOW + timedelta(days=5)

    requested = reservations.request_extension(
        db_session, orm_user(member), t.id, ExtendIn(new_return_date=new_date, reason="shoot moved"),
        notifier=recorder, now=NOW,
    )
    assert len(requested.extensions) == 1
    ext = requested.extensions[0]
    assert ext.status == "pending"

    with pytest.raises(ValidationError):
        reservations.request_extension(
            db_session, orm_user(member), t.id,
            ExtendIn(new_return_date=new_date + timedelta(days=1), reason="again"), now=NOW,
        )

    decided = reservations.decide_extension(
        db_session, orm_user(manager), t.id, ext.id, approved=True, notifier=recorder, now=NOW
    )
    assert decided.expected_return_date == new_date
    assert decided.extensions[0].status == "approved"
    assert decided.extensions[0].decided_by == manager.id
    assert recorder.names() == ["extension_requested", "extension_approved"]

    with pytest.raises(InvalidStateTransition):
        reservations.decide_extension(db_session, orm_user(manager), t.id, ext.id, approved=False, now=NOW)


def test_extension_must_be_later_than_current_due_date(db_session, make_item, member, orm_user):
    item = make_item(total_quantity=2)
    t = _checkout(db_session, orm_user(member), item, 1, days=4)

    with pytest.raises(ValidationError):
        reservations.request_extension(
            db_session, orm_user(member), t.id,
            ExtendIn(new_return_date=NOW + timedelta(days=3), reason="earlier"), now=NOW,
        )


def test_rejected_extension_keeps_due_date(db_session, make_item, member, manager, orm_user):
    item = make_item(total_quantity=2)
    t = _checkout(db_session, orm_user(member), item, 1, days=2)
    requested = reservations.request_extension(
        db_session, orm_user(member), t.id,
        ExtendIn(new_return_date=NOW + timedelta(days=6), reason="more time"), now=NOW,
    )

    decided = reservations.decide_extension(
        db_session, orm_user(manager), t.id, requested.extensions[0].id, approved=False, notes="no", now=NOW
    )
    assert decided.expected_return_date == NOW + timedelta(days=2)
    assert decided.extensions[0].status == "rejected"
    assert decided.extensions[0].notes == "no"


def test_adjust_item_quantity_records_adjustment(db_session, make_item, admin, member, orm_user):
    from models import QuantityAdjustment

    item = make_item(total_quantity=3)
    _checkout(db_session, orm_user(member), item, 2)

    with pytest.raises(Forbidden):
        reservations.adjust_item_quantity(db_session, orm_user(member), item.id, QuantityAdjustment(adjustment=1, reason="found"))

    updated = reservations.adjust_item_quantity(
        db_session, orm_user(admin), item.id, QuantityAdjustment(adjustment=-1, reason="broken"), now=NOW
    )
    assert updated.total_quantity == 2
    assert updated.available_quantity == 0

    adjustments = crud.list_transactions_filtered(
        db_session, status=None, type="adjustment", user_id=None, item_id=item.id,
        sort="created_at", order="asc", limit=50, offset=0, now=NOW,
    )
    assert len(adjustments) == 1
    assert adjustments[0].status == "returned"
    assert adjustments[0].quantity == 1


def test_reserved_quantity_matches_open_transactions(db_session, make_item, member, orm_user):
    import ledger

    item = make_item(total_quantity=5, requires_approval=True)
    first = _checkout(db_session, orm_user(member), item, 2)
    _checkout(db_session, orm_user(member), item, 1)
    assert ledger.reserved_quantity(db_session, item.id) == 3

    reservations.cancel(db_session, orm_user(member), first.id, now=NOW)
    assert ledger.reserved_quantity(db_session, item.id) == 1
    assert _available(db_session, item.id) == 4
