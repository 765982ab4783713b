from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app import crud
from app.api.errors import IllegalTransitionError
from app.enums import AttemptEventType, PaymentMethod, PaymentStatus
from app.models import Order, OrderItem
from app.services import payment_state
from app.services.payment_state import can_transition, is_terminal, to_outcome


def _order(product_id: str, order_id: str | None = None) -> Order:
    order = Order(
        product_id=product_id,
        customer_name="Ana Souza",
        customer_email="ana@example.com",
        subtotal=Decimal("100.00"),
        discount_amount=Decimal("0.00"),
        total_amount=Decimal("100.00"),
        payment_method=PaymentMethod.instant_transfer.value,
    )
    if order_id:
        order.id = order_id
    return order


def _items(product_id: str) -> list[OrderItem]:
    return [OrderItem(product_id=product_id, unit_price=Decimal("100.00"), total_price=Decimal("100.00"))]


def test_state_machine_rules():
    for terminal in payment_state.TERMINAL_STATUSES:
        assert is_terminal(terminal)
        assert can_transition(PaymentStatus.pending, terminal)
        assert can_transition(terminal, terminal)
        for other in PaymentStatus:
            if other != terminal:
                assert not can_transition(terminal, other)
    assert not is_terminal("pending")
    assert can_transition("pending", "pending")

    assert to_outcome("approved").value == "approved"
    assert to_outcome("rejected").value == "failed"
    assert to_outcome("cancelled").value == "failed"
    assert to_outcome("pending").value == "processing"


def test_create_with_items_is_atomic(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))
    assert order.payment_status == PaymentStatus.pending
    items = crud.orders.get_items(session=db, order_id=order.id)
    assert len(items) == 1
    assert items[0].order_id == order.id


def test_duplicate_order_id_raises_integrity_error_and_writes_nothing(engine, db, catalog):
    crud.create_order_with_items(
        session=db, order=_order(catalog.product.id, "order_dup_0001"), items=_items(catalog.product.id)
    )
    with Session(engine) as other:
        with pytest.raises(IntegrityError):
            crud.create_order_with_items(
                session=other,
                order=_order(catalog.product.id, "order_dup_0001"),
                items=_items(catalog.product.id),
            )
    rows = db.exec(select(OrderItem).where(OrderItem.order_id == "order_dup_0001")).all()
    assert len(rows) == 1


def test_transition_pending_to_terminal_then_same_terminal_is_noop(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))

    first = crud.transition_order_status(
        session=db, order_id=order.id, new_status=PaymentStatus.approved, gateway_payment_id="pay_1"
    )
    assert first is not None
    assert first.applied and first.changed
    assert first.order.payment_status == PaymentStatus.approved
    assert first.order.gateway_payment_id == "pay_1"
    assert first.order.paid_at is not None

    again = crud.transition_order_status(session=db, order_id=order.id, new_status=PaymentStatus.approved)
    assert again is not None
    assert not again.applied and not again.changed


def test_transition_terminal_conflict_is_rejected(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))
    crud.transition_order_status(session=db, order_id=order.id, new_status=PaymentStatus.approved)

    with pytest.raises(IllegalTransitionError) as exc_info:
        crud.transition_order_status(session=db, order_id=order.id, new_status=PaymentStatus.failed)
    assert exc_info.value.current == "approved"
    assert exc_info.value.requested == "failed"

    with pytest.raises(IllegalTransitionError):
        crud.transition_order_status(session=db, order_id=order.id, new_status=PaymentStatus.pending)

    db.expire_all()
    assert crud.get_order(session=db, order_id=order.id).payment_status == PaymentStatus.approved


def test_pending_to_pending_keeps_order_open_and_records_reference(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))
    result = crud.transition_order_status(
        session=db, order_id=order.id, new_status=PaymentStatus.pending, gateway_payment_id="pay_2"
    )
    assert result is not None
    assert result.applied and not result.changed
    assert result.order.gateway_payment_id == "pay_2"
    assert result.order.paid_at is None


def test_transition_unknown_order_returns_none(db):
    assert crud.transition_order_status(session=db, order_id="missing", new_status=PaymentStatus.approved) is None


def test_attempts_are_appended_in_order(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))
    crud.append_attempt(
        session=db,
        event_type=AttemptEventType.payment_created,
        order_id=order.id,
        gateway_payment_id="pay_1",
        payment_status=PaymentStatus.pending,
        payload={"method_payload": {"qr_code": "abc"}},
    )
    crud.append_attempt(
        session=db,
        event_type=AttemptEventType.webhook_received,
        order_id=order.id,
        gateway_payment_id="pay_1",
        payment_status=PaymentStatus.approved,
        raw_status="approved",
    )
    attempts = crud.orders.list_attempts(session=db, order_id=order.id)
    assert [a.event_type for a in attempts] == [AttemptEventType.payment_created, AttemptEventType.webhook_received]

    latest = crud.orders.latest_attempt(session=db, order_id=order.id, event_type=AttemptEventType.payment_created)
    assert latest is not None
    assert latest.payload == {"method_payload": {"qr_code": "abc"}}


def test_add_on_resolution_skips_inactive_offers_and_products(db, catalog):
    inactive_product = crud.create_product(session=db, name="Gone", price=Decimal("10.00"), is_active=False)
    crud.create_add_on(
        session=db, product_id=catalog.product.id, bump_product_id=inactive_product.id, title="Gone bump"
    )
    crud.create_add_on(
        session=db,
        product_id=catalog.product.id,
        bump_product_id=catalog.bump_product.id,
        title="Disabled bump",
        is_active=False,
    )

    active = crud.list_active_add_ons(session=db, product_id=catalog.product.id)
    assert [offer.id for offer, _ in active] == [catalog.offer.id]
    assert crud.list_active_add_ons(session=db, product_id=catalog.product.id, offer_ids=[]) == []


def test_preference_id_is_written_once(db, catalog):
    order = crud.create_order_with_items(session=db, order=_order(catalog.product.id), items=_items(catalog.product.id))

    assert crud.set_preference_id(session=db, order_id=order.id, preference_id="pref_1") is True
    assert crud.set_preference_id(session=db, order_id=order.id, preference_id="pref_2") is False

    db.expire_all()
    assert db.get(Order, order.id).gateway_preference_id == "pref_1"
