"""Cart to order conversion.

Checkout runs as one transaction. It re-reads each book and snapshots price
and sale percent into order lines. It prices the snapshot, reserves stock
with a guarded UPDATE, writes the order with its public feed message and
empties the cart. If any line cannot be reserved, nothing is written. The bill
goes out after commit and its failure never undoes the order.
"""
import logging
import secrets

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from broadcasts import record_order_placed
from carts import priced_lines
from discounts import DiscountPolicy, PricedLine, calculate
from errors import ConflictError, EmptyCartError, InsufficientStockError, NotFoundError
from models import Book, CartItem, Member, Order, OrderItem, OrderStatus, db, utcnow

logger = logging.getLogger(__name__)

# No 0/O or 1/I so codes can be read out at the counter
CLAIM_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


def generate_claim_code(length=10):
    return ''.join(secrets.choice(CLAIM_CODE_ALPHABET) for _ in range(length))


def _unused_claim_code(length, attempts):
    for _ in range(attempts):
        code = generate_claim_code(length)
        if not Order.query.filter_by(claim_code=code).first():
            return code
    raise ConflictError('Could not allocate a unique claim code')


def _is_claim_code_collision(error):
    return 'claim_code' in str(getattr(error, 'orig', error))


def _reserve_stock(book_id, quantity):
    result = db.session.execute(
        update(Book)
        .where(
            Book.book_id == book_id,
            Book.stock_quantity >= quantity,
            Book.is_available_in_library.is_(True),
        )
        .values(stock_quantity=Book.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientStockError(
            'Not enough stock to complete the order',
            details=[{'book_id': book_id, 'requested': quantity}],
        )


def preview_cart(member_id, policy=DiscountPolicy()):
    member = db.session.get(Member, member_id)
    if not member:
        raise NotFoundError('Member not found')
    items = CartItem.query.filter_by(member_id=member_id).order_by(CartItem.cart_item_id).all()
    breakdown = calculate(priced_lines(items), member.successful_orders_count, policy)
    return items, breakdown


def _place_order_once(member_id, policy, claim_code_length, claim_code_attempts):
    member = db.session.get(Member, member_id)
    if not member:
        raise NotFoundError('Member not found')
    cart = CartItem.query.filter_by(member_id=member_id).order_by(CartItem.cart_item_id).all()
    if not cart:
        raise EmptyCartError()

    now = utcnow()
    try:
        order = Order(
            member_id=member_id,
            order_date=now,
            status=OrderStatus.PENDING,
            claim_code=_unused_claim_code(claim_code_length, claim_code_attempts),
        )
        lines = []
        for cart_item in cart:
            book = db.session.get(Book, cart_item.book_id, populate_existing=True, with_for_update=True)
            if book is None or not book.is_available_in_library or cart_item.quantity > book.stock_quantity:
                available = 0 if book is None or not book.is_available_in_library else book.stock_quantity
                title = book.title if book else f'#{cart_item.book_id}'
                logger.warning(f"Checkout rejected for member_id={member_id}: {title} requested={cart_item.quantity} available={available}")
                raise InsufficientStockError(
                    f'Not enough stock for "{title}"',
                    details=[{'book_id': cart_item.book_id, 'requested': cart_item.quantity, 'available': available}],
                )
            percent = book.active_discount_percent(now)
            order.items.append(OrderItem(
                book_id=book.book_id,
                title=book.title,
                quantity=cart_item.quantity,
                unit_price=book.price,
                discount_percent=percent,
            ))
            lines.append(PricedLine(unit_price=book.price, quantity=cart_item.quantity, discount_percent=percent))

        breakdown = calculate(lines, member.successful_orders_count, policy)
        order.subtotal = breakdown.subtotal
        order.item_discount = breakdown.item_discount
        order.bulk_discount = breakdown.bulk_discount
        order.loyalty_discount = breakdown.loyalty_discount
        order.total_amount = breakdown.total
        order.applied_bulk_low_discount = breakdown.applied_bulk_low
        order.applied_bulk_high_discount = breakdown.applied_bulk_high
        order.applied_loyalty_discount = breakdown.applied_loyalty

        for cart_item in cart:
            _reserve_stock(cart_item.book_id, cart_item.quantity)
        db.session.add(order)
        record_order_placed(order)
        for cart_item in cart:
            db.session.delete(cart_item)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.debug(f"Order placed: order_id={order.order_id} member_id={member_id} total={order.total_amount}")
    return order, member


def place_order(member_id, policy=DiscountPolicy(), notifier=None, claim_code_length=10, claim_code_attempts=5):
    """Check out the member's cart and return the new Pending order."""
    for attempt in range(1, claim_code_attempts + 1):
        try:
            order, member = _place_order_once(member_id, policy, claim_code_length, claim_code_attempts)
        except IntegrityError as e:
            if not _is_claim_code_collision(e):
                logger.error(f"Checkout failed for member_id={member_id}: {str(e)}")
                raise
            logger.warning(f"Claim code collision, retrying checkout ({attempt}/{claim_code_attempts})")
            continue
        if notifier is not None:
            notifier.notify_order_placed(member, order)
        return order
    raise ConflictError('Could not allocate a unique claim code')
