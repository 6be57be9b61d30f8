"""Order state transitions after checkout.

Pending -> Fulfilled is done by staff with the claim code. Pending ->
Cancelled is done by the owning member. Both end states are terminal. Each
transition is a guarded UPDATE on ``status``, so two racing requests cannot
both apply.
"""
import logging

from sqlalchemy import update

from errors import AuthenticationError, NotFoundError, OrderStateError
from models import Book, Member, Order, OrderStatus, ProcessedOrder, Staff, db, utcnow

logger = logging.getLogger(__name__)


def normalize_claim_code(claim_code):
    return (claim_code or '').strip().upper()


def _transition(order_id, new_status, **values):
    result = db.session.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.status == OrderStatus.PENDING)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def fulfill_order(claim_code, staff_id):
    """Mark the pending order with this claim code as collected.

    Records who processed it and bumps the member's successful-order counter,
    which feeds the loyalty discount. Unknown, cancelled or already fulfilled
    codes are all reported as not found.
    """
    if db.session.get(Staff, staff_id) is None:
        raise AuthenticationError('Staff account not found')
    code = normalize_claim_code(claim_code)
    order = Order.query.filter_by(claim_code=code).first()
    if order is None or order.status != OrderStatus.PENDING:
        logger.warning(f"Fulfilment rejected: no pending order for claim code {code!r}")
        raise NotFoundError('No pending order matches this claim code')

    try:
        if not _transition(order.order_id, OrderStatus.FULFILLED):
            raise NotFoundError('No pending order matches this claim code')
        processed = ProcessedOrder(order_id=order.order_id, staff_id=staff_id, processed_at=utcnow())
        db.session.add(processed)
        db.session.execute(
            update(Member)
            .where(Member.member_id == order.member_id)
            .values(successful_orders_count=Member.successful_orders_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(order)
    logger.debug(f"Order fulfilled: order_id={order.order_id} staff_id={staff_id}")
    return order, processed


def cancel_order(order_id, member_id):
    """Cancel one of the member's own pending orders and return its stock."""
    order = Order.query.filter_by(order_id=order_id, member_id=member_id).first()
    if order is None:
        raise NotFoundError('Order not found')
    if order.status != OrderStatus.PENDING:
        raise OrderStateError('Only pending orders can be cancelled')

    try:
        if not _transition(order.order_id, OrderStatus.CANCELLED, is_cancelled=True):
            raise OrderStateError('Only pending orders can be cancelled')
        for item in order.items:
            if item.book_id is None:
                continue
            db.session.execute(
                update(Book)
                .where(Book.book_id == item.book_id)
                .values(stock_quantity=Book.stock_quantity + item.quantity)
                .execution_options(synchronize_session=False)
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(order)
    logger.debug(f"Order cancelled: order_id={order_id} member_id={member_id}")
    return order


def member_orders(member_id):
    return Order.query.filter_by(member_id=member_id).order_by(Order.order_date.desc(), Order.order_id.desc()).all()


def get_order(order_id):
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError('Order not found')
    return order


def orders_with_members(status=None):
    """(order, member, processed-or-None) rows for staff and admin views."""
    query = (
        db.session.query(Order, Member, ProcessedOrder)
        .join(Member, Member.member_id == Order.member_id)
        .outerjoin(ProcessedOrder, ProcessedOrder.order_id == Order.order_id)
    )
    if status is not None:
        query = query.filter(Order.status == status)
    return query.order_by(Order.order_date.desc(), Order.order_id.desc()).all()


def fulfilled_orders():
    return orders_with_members(OrderStatus.FULFILLED)


def pending_orders():
    return orders_with_members(OrderStatus.PENDING)
