"""Tests for ReconciliationDispatcher event routing."""

import pytest
from sqlalchemy import select, update

from app.exceptions import ConsistencyError, PaymentNotFoundError
from app.models.checkout import Order, OrderStatus, Payment, PaymentStatus, Product
from app.services.reconciliation import ReconciliationDispatcher, WebhookOutcome


@pytest.fixture()
def dispatcher(db_session) -> ReconciliationDispatcher:
    return ReconciliationDispatcher(db_session)


@pytest.fixture()
def pending_order(checkout_service, make_product):
    product = make_product(stock=4)
    result = checkout_service.create_checkout("user-1", [(product.id, 2)])
    return result, product


def _stock(db_session, product) -> int:
    return db_session.scalar(select(Product.stock).where(Product.id == product.id))


def _order(db_session, order_id) -> Order:
    order = db_session.get(Order, order_id)
    db_session.refresh(order)
    return order


def test_payment_intent_succeeded_after_session_does_not_take_stock_twice(
    db_session, dispatcher, pending_order, make_event
):
    created, product = pending_order
    session_event = make_event(
        "checkout.session.completed",
        {"id": created.session.id, "mode": "payment", "payment_intent": "pi_1"},
    )
    intent_event = make_event(
        "payment_intent.succeeded",
        {"id": "pi_1", "metadata": {"order_id": str(created.order_id)}},
    )

    assert dispatcher.dispatch(session_event) == WebhookOutcome.processed
    assert dispatcher.dispatch(intent_event) == WebhookOutcome.processed
    db_session.commit()

    assert _stock(db_session, product) == 2
    assert _order(db_session, created.order_id).status == OrderStatus.completed


def test_payment_intent_first_completes_via_order_metadata(
    db_session, dispatcher, pending_order, make_event
):
    created, product = pending_order
    intent_event = make_event(
        "payment_intent.succeeded",
        {"id": "pi_9", "metadata": {"order_id": str(created.order_id)}},
    )
    session_event = make_event(
        "checkout.session.completed",
        {"id": created.session.id, "mode": "payment", "payment_intent": "pi_9"},
    )

    dispatcher.dispatch(intent_event)
    dispatcher.dispatch(session_event)
    db_session.commit()

    order = _order(db_session, created.order_id)
    assert order.payment.status == PaymentStatus.completed
    assert order.payment.gateway_charge_id == "pi_9"
    assert _stock(db_session, product) == 2


def test_payment_failed_marks_payment_and_order_failed(
    db_session, dispatcher, pending_order, make_event
):
    created, product = pending_order
    event = make_event(
        "payment_intent.payment_failed",
        {"id": "pi_2", "metadata": {"order_id": str(created.order_id)}},
    )

    assert dispatcher.dispatch(event) == WebhookOutcome.processed
    db_session.commit()

    order = _order(db_session, created.order_id)
    assert order.status == OrderStatus.failed
    assert order.payment.status == PaymentStatus.failed
    assert _stock(db_session, product) == 4


def test_failed_payment_never_returns_to_completed(
    db_session, dispatcher, pending_order, make_event
):
    created, _ = pending_order
    dispatcher.dispatch(
        make_event(
            "payment_intent.payment_failed",
            {"id": "pi_3", "metadata": {"order_id": str(created.order_id)}},
        )
    )

    with pytest.raises(ConsistencyError) as exc_info:
        dispatcher.dispatch(
            make_event(
                "checkout.session.completed",
                {"id": created.session.id, "mode": "payment"},
            )
        )
    assert exc_info.value.order_id == created.order_id


def test_session_expired_cancels(db_session, dispatcher, pending_order, make_event):
    created, _ = pending_order

    dispatcher.dispatch(make_event("checkout.session.expired", {"id": created.session.id}))
    db_session.commit()

    order = _order(db_session, created.order_id)
    assert order.status == OrderStatus.canceled
    assert order.payment.status == PaymentStatus.canceled


def test_unpaid_completed_session_is_ignored(db_session, dispatcher, pending_order, make_event):
    created, product = pending_order
    event = make_event(
        "checkout.session.completed",
        {"id": created.session.id, "mode": "payment", "payment_status": "unpaid"},
    )

    assert dispatcher.dispatch(event) == WebhookOutcome.ignored
    assert _stock(db_session, product) == 4


def test_unknown_session_raises_payment_not_found(dispatcher, make_event):
    with pytest.raises(PaymentNotFoundError):
        dispatcher.dispatch(
            make_event("checkout.session.completed", {"id": "cs_nope", "mode": "payment"})
        )


def test_intent_without_local_payment_is_ignored(dispatcher, make_event):
    event = make_event("payment_intent.succeeded", {"id": "pi_other", "metadata": {}})
    assert dispatcher.dispatch(event) == WebhookOutcome.ignored


def test_unhandled_type_is_ignored(dispatcher, make_event):
    assert dispatcher.dispatch(make_event("charge.refunded", {})) == WebhookOutcome.ignored


def test_oversold_stock_rolls_back_savepoint(db_session, dispatcher, checkout_service, make_product, make_event):
    plenty = make_product(name="Plenty", stock=5)
    scarce = make_product(name="Scarce", stock=1)
    created = checkout_service.create_checkout("user-1", [(plenty.id, 1), (scarce.id, 1)])
    scarce.stock = 0
    db_session.commit()

    with pytest.raises(ConsistencyError):
        dispatcher.dispatch(
            make_event(
                "checkout.session.completed",
                {"id": created.session.id, "mode": "payment"},
            )
        )
    db_session.rollback()

    # No partial decrement survives
    assert _stock(db_session, plenty) == 5
    assert _stock(db_session, scarce) == 0


def test_payment_completed_after_it_was_loaded_takes_no_stock(
    db_session, dispatcher, pending_order, make_event
):
    created, product = pending_order
    payment = db_session.scalar(select(Payment).where(Payment.order_id == created.order_id))
    assert payment.status == PaymentStatus.pending
    # Another delivery completes the payment behind this session's copy
    db_session.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(status=PaymentStatus.completed)
        .execution_options(synchronize_session=False)
    )
    assert payment.status == PaymentStatus.pending

    outcome = dispatcher.dispatch(
        make_event(
            "payment_intent.succeeded",
            {"id": "pi_late", "metadata": {"order_id": str(created.order_id)}},
        )
    )
    db_session.commit()

    assert outcome == WebhookOutcome.processed
    assert _stock(db_session, product) == 4
    assert payment.status == PaymentStatus.completed
