import logging

from sqlalchemy.exc import IntegrityError

from discounts import PricedLine
from errors import InsufficientStockError, NotFoundError, ValidationError
from models import Book, CartItem, db, utcnow

logger = logging.getLogger(__name__)


def get_cart(member_id):
    return CartItem.query.filter_by(member_id=member_id).order_by(CartItem.cart_item_id).all()


def priced_lines(cart_items, now=None):
    now = now or utcnow()
    return [
        PricedLine(
            unit_price=item.book.price,
            quantity=item.quantity,
            discount_percent=item.book.active_discount_percent(now),
        )
        for item in cart_items
    ]


def set_cart_item(member_id, book_id, quantity):
    """Add a book to the cart or change its quantity; zero removes the line."""
    if quantity is None or quantity < 0:
        raise ValidationError(details=[{'field': 'quantity', 'message': 'must not be negative'}])
    book = db.session.get(Book, book_id)
    if not book:
        logger.debug(f"Book not found: book_id={book_id}")
        raise NotFoundError('Book not found')

    existing = CartItem.query.filter_by(member_id=member_id, book_id=book_id).first()
    if quantity == 0:
        if existing:
            db.session.delete(existing)
            db.session.commit()
            logger.debug(f"Cart line removed: member_id={member_id} book_id={book_id}")
        return None

    if not book.is_available_in_library or book.stock_quantity <= 0:
        raise InsufficientStockError('This book is not available')
    if quantity > book.stock_quantity:
        raise InsufficientStockError(f'Only {book.stock_quantity} copies available')

    if existing is None:
        existing = CartItem(member_id=member_id, book_id=book_id, quantity=quantity)
        db.session.add(existing)
    else:
        existing.quantity = quantity
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        # Only a line inserted by another request first is recoverable
        existing = CartItem.query.filter_by(member_id=member_id, book_id=book_id).first()
        if existing is None:
            logger.error(f"Cart update failed: member_id={member_id} book_id={book_id}: {str(e)}")
            raise
        existing.quantity = quantity
        db.session.commit()
    logger.debug(f"Cart updated: member_id={member_id} book_id={book_id} quantity={quantity}")
    return existing


def remove_cart_item(member_id, book_id):
    item = CartItem.query.filter_by(member_id=member_id, book_id=book_id).first()
    if not item:
        raise NotFoundError('Book is not in your cart')
    db.session.delete(item)
    db.session.commit()
    logger.debug(f"Cart line removed: member_id={member_id} book_id={book_id}")


def clear_cart(member_id):
    removed = CartItem.query.filter_by(member_id=member_id).delete(synchronize_session=False)
    db.session.commit()
    logger.debug(f"Cart cleared: member_id={member_id}, {removed} lines")
    return removed
