import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from errors import DuplicateReviewError, EligibilityError, NotFoundError, ValidationError
from models import Book, Order, OrderItem, OrderStatus, Review, db, utcnow
from policies import can_modify_review, require

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 1000


def _validate(rating, comment):
    errors = []
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        errors.append({'field': 'rating', 'message': 'must be an integer between 1 and 5'})
    if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
        errors.append({'field': 'comment', 'message': f'must be at most {MAX_COMMENT_LENGTH} characters'})
    if errors:
        raise ValidationError(details=errors)


def has_received_book(member_id, book_id):
    return bool(db.session.query(
        Order.query
        .join(OrderItem, OrderItem.order_id == Order.order_id)
        .filter(
            Order.member_id == member_id,
            Order.status == OrderStatus.FULFILLED,
            OrderItem.book_id == book_id,
        )
        .exists()
    ).scalar())


def has_reviewed(member_id, book_id):
    return Review.query.filter_by(member_id=member_id, book_id=book_id).first() is not None


def can_review(member_id, book_id):
    return has_received_book(member_id, book_id) and not has_reviewed(member_id, book_id)


def create_review(member_id, book_id, rating, comment=''):
    _validate(rating, comment)
    if db.session.get(Book, book_id) is None:
        raise NotFoundError('Book not found')
    if has_reviewed(member_id, book_id):
        raise DuplicateReviewError()
    if not has_received_book(member_id, book_id):
        logger.warning(f"Review refused: member_id={member_id} has not received book_id={book_id}")
        raise EligibilityError('You can only review books you have purchased and received')

    review = Review(member_id=member_id, book_id=book_id, rating=rating, comment=comment or '', created_at=utcnow())
    db.session.add(review)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DuplicateReviewError()
    logger.debug(f"Review created: review_id={review.review_id} book_id={book_id}")
    return review


def _get_review(review_id):
    review = db.session.get(Review, review_id)
    if review is None:
        raise NotFoundError('Review not found')
    return review


def update_review(review_id, identity, rating, comment=''):
    review = _get_review(review_id)
    require(can_modify_review(identity, review), 'You can only edit your own reviews')
    _validate(rating, comment)
    review.rating = rating
    review.comment = comment or ''
    review.updated_at = utcnow()
    db.session.commit()
    logger.debug(f"Review updated: review_id={review_id} by {identity.role} {identity.subject_id}")
    return review


def delete_review(review_id, identity):
    review = _get_review(review_id)
    require(can_modify_review(identity, review), 'You can only delete your own reviews')
    db.session.delete(review)
    db.session.commit()
    logger.debug(f"Review deleted: review_id={review_id} by {identity.role} {identity.subject_id}")


def reviews_for_book(book_id):
    return Review.query.filter_by(book_id=book_id).order_by(Review.created_at.desc(), Review.review_id.desc()).all()


def average_rating(book_id):
    value = db.session.query(func.avg(Review.rating)).filter(Review.book_id == book_id).scalar()
    return round(float(value), 2) if value is not None else 0.0
