import functools
import logging
import time

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql import text

import accounts
import announcements
import bookmarks
import broadcasts
import carts
import catalog
import checkout
import fulfillment
import reviews
from auth import authenticate, current_identity, end_session, login_required, start_session
from discounts import discount_eligibility, to_money
from errors import NotFoundError, ValidationError
from models import Member, OrderStatus, Role, db, utcnow
from policies import (
    can_fulfill_orders,
    can_manage_accounts,
    can_manage_announcements,
    can_manage_catalog,
    can_shop,
    can_view_all_orders,
    owns_order,
)
from schemas import (
    AnnouncementRequest,
    BookCreateRequest,
    BookmarkRequest,
    BookUpdateRequest,
    CartItemRequest,
    CatalogQuery,
    ClaimCodeRequest,
    LoginRequest,
    RegisterRequest,
    ReviewCreateRequest,
    ReviewUpdateRequest,
    StaffCreateRequest,
    parse,
)

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')

DISCOUNTS_KEY = 'bookstore.discounts'
NOTIFIER_KEY = 'bookstore.notifier'


def retry_db_operation(max_attempts=None, delay=None):
    """Retry a handler when the database connection drops mid-request."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            allowed = max_attempts or current_app.config['DB_RETRY_ATTEMPTS']
            wait = current_app.config['DB_RETRY_DELAY'] if delay is None else delay
            attempts = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    db.session.rollback()
                    logger.error(f"Database operation failed: {str(e)}")
                    attempts += 1
                    if attempts >= allowed:
                        raise
                    time.sleep(wait)
                    logger.debug(f"Retrying database operation ({attempts}/{allowed})")
        return wrapper
    return decorator


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _discount_policy():
    return current_app.extensions[DISCOUNTS_KEY]


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


# Serializers

def _book_summary(book, avg_rating=None, review_count=None, now=None):
    now = now or utcnow()
    percent = book.active_discount_percent(now)
    body = {
        'book_id': book.book_id,
        'title': book.title,
        'isbn': book.isbn,
        'author': book.author,
        'genre': book.genre,
        'language': book.language,
        'format': book.format,
        'publisher': book.publisher,
        'price': _money(book.price),
        'on_sale': book.is_on_sale(now),
        'discount_percent': float(percent),
        'sale_price': float(to_money(book.price * (100 - percent) / 100)),
        'publication_date': _iso(book.publication_date),
        'stock_quantity': book.stock_quantity,
        'is_available_in_library': book.is_available_in_library,
        'is_award_winner': book.is_award_winner,
        'is_bestseller': book.is_bestseller,
    }
    if avg_rating is not None:
        body['average_rating'] = round(float(avg_rating), 2)
        body['review_count'] = review_count or 0
    return body


def _book_detail(book):
    avg, count = catalog.rating_summary(book.book_id)
    body = _book_summary(book, avg, count)
    body.update({
        'description': book.description,
        'page_count': book.page_count,
        'discount_start': _iso(book.discount_start),
        'discount_end': _iso(book.discount_end),
    })
    return body


def _order_dict(order, include_claim_code=True):
    body = {
        'order_id': order.order_id,
        'member_id': order.member_id,
        'order_date': _iso(order.order_date),
        'status': order.status,
        'subtotal': _money(order.subtotal),
        'item_discount': _money(order.item_discount),
        'bulk_discount': _money(order.bulk_discount),
        'loyalty_discount': _money(order.loyalty_discount),
        'total_amount': _money(order.total_amount),
        'applied_bulk_low_discount': order.applied_bulk_low_discount,
        'applied_bulk_high_discount': order.applied_bulk_high_discount,
        'applied_loyalty_discount': order.applied_loyalty_discount,
        'is_cancelled': order.is_cancelled,
        'items': [{
            'book_id': i.book_id,
            'title': i.title,
            'quantity': i.quantity,
            'unit_price': _money(i.unit_price),
            'discount_percent': float(i.discount_percent or 0),
        } for i in order.items],
    }
    if include_claim_code:
        body['claim_code'] = order.claim_code
    return body


def _staff_order_dict(order, member, processed):
    body = _order_dict(order, include_claim_code=False)
    body['member'] = {'member_id': member.member_id, 'full_name': member.full_name, 'email': member.email}
    if processed is not None:
        body['processed_at'] = _iso(processed.processed_at)
        body['processed_by'] = processed.staff.full_name if processed.staff else None
    return body


def _review_dict(review):
    return {
        'review_id': review.review_id,
        'book_id': review.book_id,
        'member_id': review.member_id,
        'member_name': review.member.full_name if review.member else None,
        'rating': review.rating,
        'comment': review.comment,
        'created_at': _iso(review.created_at),
        'updated_at': _iso(review.updated_at),
    }


def _announcement_dict(a):
    return {
        'announcement_id': a.announcement_id,
        'title': a.title,
        'message': a.message,
        'type': a.type,
        'start_time': _iso(a.start_time),
        'end_time': _iso(a.end_time),
        'created_at': _iso(a.created_at),
        'updated_at': _iso(a.updated_at),
        'is_active': a.is_active(),
    }


def _cart_body(member_id):
    items, breakdown = checkout.preview_cart(member_id, _discount_policy())
    now = utcnow()
    return {
        'items': [{
            'cart_item_id': item.cart_item_id,
            'book': _book_summary(item.book, now=now),
            'quantity': item.quantity,
        } for item in items],
        'summary': breakdown.to_dict(),
    }


# Health and auth

@api.route('/health', methods=['GET'])
@retry_db_operation()
def health():
    db.session.execute(text('SELECT 1'))
    return jsonify({'status': 'ok', 'time': utcnow().isoformat()}), 200


@api.route('/auth/register', methods=['POST'])
@retry_db_operation()
def register():
    data = parse(RegisterRequest, _json_body())
    member = accounts.register_member(data.full_name, data.email, data.password)
    return jsonify({
        'message': 'Member registered successfully',
        'member_id': member.member_id,
        'membership_id': member.membership_id,
    }), 201


@api.route('/auth/login', methods=['POST'])
@retry_db_operation()
def login():
    data = parse(LoginRequest, _json_body())
    identity, account = authenticate(data.email, data.password)
    token = start_session(identity)
    logger.debug(f"Session created for {identity.role}: {account.email}")
    return jsonify({
        'message': 'Login successful',
        'token': token,
        'role': identity.role,
        'name': account.full_name,
    }), 200


@api.route('/auth/logout', methods=['POST'])
def logout():
    end_session()
    logger.debug("User logged out")
    return jsonify({'message': 'Logout successful'}), 200


@api.route('/auth/me', methods=['GET'])
@login_required()
@retry_db_operation()
def me():
    identity = current_identity()
    account = accounts.find_account(identity)
    body = {
        'id': identity.subject_id,
        'role': identity.role,
        'full_name': account.full_name,
        'email': account.email,
    }
    if identity.role == Role.MEMBER:
        body['membership_id'] = account.membership_id
        body['successful_orders_count'] = account.successful_orders_count
    elif identity.role == Role.STAFF:
        body['position'] = account.position
    return jsonify(body), 200


# Catalog

@api.route('/books', methods=['GET'])
@retry_db_operation()
def list_books():
    query = CatalogQuery.from_args(request.args)
    rows, total = catalog.search_books(query)
    now = utcnow()
    response = jsonify([_book_summary(book, avg, count, now) for book, avg, count in rows])
    response.headers['X-Total-Count'] = str(total)
    return response, 200


@api.route('/books/<int:book_id>', methods=['GET'])
@retry_db_operation()
def get_book(book_id):
    return jsonify(_book_detail(catalog.get_book(book_id))), 200


@api.route('/books/facets/<facet>', methods=['GET'])
@retry_db_operation()
def book_facets(facet):
    return jsonify(catalog.facet_values(facet)), 200


@api.route('/books', methods=['POST'])
@login_required(can_manage_catalog)
@retry_db_operation()
def add_book():
    data = parse(BookCreateRequest, _json_body())
    book = catalog.create_book(data.model_dump())
    return jsonify({'message': 'Book added successfully', 'book': _book_detail(book)}), 201


@api.route('/books/<int:book_id>', methods=['PUT'])
@login_required(can_manage_catalog)
@retry_db_operation()
def edit_book(book_id):
    data = parse(BookUpdateRequest, _json_body())
    book = catalog.update_book(book_id, data.model_dump(exclude_unset=True))
    return jsonify({'message': 'Book updated successfully', 'book': _book_detail(book)}), 200


@api.route('/books/<int:book_id>', methods=['DELETE'])
@login_required(can_manage_catalog)
@retry_db_operation()
def delete_book(book_id):
    catalog.delete_book(book_id)
    return jsonify({'message': 'Book deleted successfully'}), 200


# Cart and orders

@api.route('/cart', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def get_cart():
    return jsonify(_cart_body(current_identity().subject_id)), 200


@api.route('/cart', methods=['POST'])
@login_required(can_shop)
@retry_db_operation()
def set_cart_item():
    member_id = current_identity().subject_id
    data = parse(CartItemRequest, _json_body())
    carts.set_cart_item(member_id, data.book_id, data.quantity)
    return jsonify(_cart_body(member_id)), 200


@api.route('/cart/<int:book_id>', methods=['DELETE'])
@login_required(can_shop)
@retry_db_operation()
def remove_cart_item(book_id):
    member_id = current_identity().subject_id
    carts.remove_cart_item(member_id, book_id)
    return jsonify(_cart_body(member_id)), 200


@api.route('/cart', methods=['DELETE'])
@login_required(can_shop)
@retry_db_operation()
def clear_cart():
    removed = carts.clear_cart(current_identity().subject_id)
    return jsonify({'message': 'Cart cleared', 'removed': removed}), 200


@api.route('/discounts/eligibility', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def loyalty_eligibility():
    member = db.session.get(Member, current_identity().subject_id)
    if member is None:
        raise NotFoundError('Member not found')
    return jsonify(discount_eligibility(member, _discount_policy())), 200


@api.route('/orders', methods=['POST'])
@login_required(can_shop)
@retry_db_operation()
def place_order():
    order = checkout.place_order(
        current_identity().subject_id,
        policy=_discount_policy(),
        notifier=current_app.extensions.get(NOTIFIER_KEY),
        claim_code_length=current_app.config['CLAIM_CODE_LENGTH'],
        claim_code_attempts=current_app.config['CLAIM_CODE_ATTEMPTS'],
    )
    return jsonify({'message': 'Order placed successfully', 'order': _order_dict(order)}), 201


@api.route('/orders/mine', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def my_orders():
    orders = fulfillment.member_orders(current_identity().subject_id)
    logger.debug(f"Fetched {len(orders)} orders")
    return jsonify([_order_dict(o) for o in orders]), 200


@api.route('/orders/<int:order_id>', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def my_order(order_id):
    identity = current_identity()
    order = fulfillment.get_order(order_id)
    # Other members' orders are reported as missing
    if not owns_order(identity, order):
        raise NotFoundError('Order not found')
    return jsonify(_order_dict(order)), 200


@api.route('/orders/<int:order_id>/cancel', methods=['POST'])
@login_required(can_shop)
@retry_db_operation()
def cancel_order(order_id):
    order = fulfillment.cancel_order(order_id, current_identity().subject_id)
    return jsonify({'message': 'Order cancelled', 'order': _order_dict(order)}), 200


@api.route('/orders', methods=['GET'])
@login_required(can_view_all_orders)
@retry_db_operation()
def all_orders():
    status = request.args.get('status')
    if status and status not in (OrderStatus.PENDING, OrderStatus.FULFILLED, OrderStatus.CANCELLED):
        raise ValidationError(details=[{'field': 'status', 'message': 'unknown order status'}])
    rows = fulfillment.orders_with_members(status or None)
    logger.debug(f"Fetched {len(rows)} orders")
    return jsonify([_staff_order_dict(*row) for row in rows]), 200


# Staff

@api.route('/staff/fulfill', methods=['POST'])
@login_required(can_fulfill_orders)
@retry_db_operation()
def fulfill_order():
    data = parse(ClaimCodeRequest, _json_body())
    order, processed = fulfillment.fulfill_order(data.claim_code, current_identity().subject_id)
    return jsonify({
        'message': 'Order fulfilled',
        'order': _order_dict(order, include_claim_code=False),
        'processed_at': _iso(processed.processed_at),
    }), 200


@api.route('/staff/orders/fulfilled', methods=['GET'])
@login_required(can_fulfill_orders)
@retry_db_operation()
def staff_fulfilled_orders():
    return jsonify([_staff_order_dict(*row) for row in fulfillment.fulfilled_orders()]), 200


@api.route('/staff/orders/pending', methods=['GET'])
@login_required(can_fulfill_orders)
@retry_db_operation()
def staff_pending_orders():
    return jsonify([_staff_order_dict(*row) for row in fulfillment.pending_orders()]), 200


# Reviews

@api.route('/books/<int:book_id>/reviews', methods=['GET'])
@retry_db_operation()
def book_reviews(book_id):
    catalog.get_book(book_id)
    items = reviews.reviews_for_book(book_id)
    return jsonify({
        'book_id': book_id,
        'average_rating': reviews.average_rating(book_id),
        'review_count': len(items),
        'reviews': [_review_dict(r) for r in items],
    }), 200


@api.route('/books/<int:book_id>/can-review', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def can_review(book_id):
    catalog.get_book(book_id)
    member_id = current_identity().subject_id
    return jsonify({'book_id': book_id, 'can_review': reviews.can_review(member_id, book_id)}), 200


@api.route('/reviews', methods=['POST'])
@login_required(can_shop)
@retry_db_operation()
def create_review():
    data = parse(ReviewCreateRequest, _json_body())
    review = reviews.create_review(current_identity().subject_id, data.book_id, data.rating, data.comment)
    return jsonify({'message': 'Review added', 'review': _review_dict(review)}), 201


@api.route('/reviews/<int:review_id>', methods=['PUT'])
@login_required()
@retry_db_operation()
def update_review(review_id):
    data = parse(ReviewUpdateRequest, _json_body())
    review = reviews.update_review(review_id, current_identity(), data.rating, data.comment)
    return jsonify({'message': 'Review updated', 'review': _review_dict(review)}), 200


@api.route('/reviews/<int:review_id>', methods=['DELETE'])
@login_required()
@retry_db_operation()
def delete_review(review_id):
    reviews.delete_review(review_id, current_identity())
    return jsonify({'message': 'Review deleted'}), 200


# Bookmarks

@api.route('/bookmarks', methods=['GET'])
@login_required(can_shop)
@retry_db_operation()
def list_bookmarks():
    now = utcnow()
    items = []
    for bookmark in bookmarks.list_bookmarks(current_identity().subject_id):
        avg, count = catalog.rating_summary(bookmark.book_id)
        items.append({
            'bookmark_id': bookmark.bookmark_id,
            'bookmarked_at': _iso(bookmark.bookmarked_at),
            'book': _book_summary(bookmark.book, avg, count, now),
        })
    return jsonify(items), 200


@api.route('/bookmarks', methods=['POST'])
@login_required(can_shop)
@retry_db_operation()
def add_bookmark():
    data = parse(BookmarkRequest, _json_body())
    bookmark = bookmarks.add_bookmark(current_identity().subject_id, data.book_id)
    return jsonify({'message': 'Bookmark added', 'bookmark_id': bookmark.bookmark_id}), 201


@api.route('/bookmarks/<int:book_id>', methods=['DELETE'])
@login_required(can_shop)
@retry_db_operation()
def remove_bookmark(book_id):
    bookmarks.remove_bookmark(current_identity().subject_id, book_id)
    return jsonify({'message': 'Bookmark removed'}), 200


# Order feed

@api.route('/notifications/recent', methods=['GET'])
@retry_db_operation()
def recent_notifications():
    return jsonify([
        {'message': m.message, 'sent_at': _iso(m.sent_at)}
        for m in broadcasts.recent_messages()
    ]), 200


# Announcements

@api.route('/announcements/active', methods=['GET'])
@retry_db_operation()
def active_announcements():
    return jsonify([_announcement_dict(a) for a in announcements.active_announcements()]), 200


@api.route('/announcements', methods=['GET'])
@login_required(can_manage_announcements)
@retry_db_operation()
def list_announcements():
    return jsonify([_announcement_dict(a) for a in announcements.all_announcements()]), 200


@api.route('/announcements', methods=['POST'])
@login_required(can_manage_announcements)
@retry_db_operation()
def create_announcement():
    data = parse(AnnouncementRequest, _json_body())
    announcement = announcements.create_announcement(data.title, data.message, data.start_time, data.end_time, data.type)
    return jsonify(_announcement_dict(announcement)), 201


@api.route('/announcements/<int:announcement_id>', methods=['PUT'])
@login_required(can_manage_announcements)
@retry_db_operation()
def update_announcement(announcement_id):
    data = parse(AnnouncementRequest, _json_body())
    announcement = announcements.update_announcement(
        announcement_id, data.title, data.message, data.start_time, data.end_time, data.type
    )
    return jsonify(_announcement_dict(announcement)), 200


@api.route('/announcements/<int:announcement_id>', methods=['DELETE'])
@login_required(can_manage_announcements)
@retry_db_operation()
def delete_announcement(announcement_id):
    announcements.delete_announcement(announcement_id)
    return jsonify({'message': 'Announcement deleted'}), 200


# Admin accounts

@api.route('/admin/staff', methods=['GET'])
@login_required(can_manage_accounts)
@retry_db_operation()
def list_staff():
    return jsonify([{
        'staff_id': s.staff_id,
        'full_name': s.full_name,
        'email': s.email,
        'position': s.position,
        'join_date': _iso(s.join_date),
    } for s in accounts.list_staff()]), 200


@api.route('/admin/staff', methods=['POST'])
@login_required(can_manage_accounts)
@retry_db_operation()
def create_staff():
    data = parse(StaffCreateRequest, _json_body())
    staff = accounts.create_staff(data.full_name, data.email, data.password, data.position)
    return jsonify({'message': 'Staff added', 'staff_id': staff.staff_id}), 201


@api.route('/admin/staff/<int:staff_id>', methods=['DELETE'])
@login_required(can_manage_accounts)
@retry_db_operation()
def delete_staff(staff_id):
    accounts.delete_staff(staff_id)
    return jsonify({'message': 'Staff removed'}), 200


@api.route('/admin/members', methods=['GET'])
@login_required(can_manage_accounts)
@retry_db_operation()
def list_members():
    return jsonify([{
        'member_id': m.member_id,
        'full_name': m.full_name,
        'email': m.email,
        'membership_id': m.membership_id,
        'join_date': _iso(m.join_date),
        'successful_orders_count': m.successful_orders_count,
    } for m in accounts.list_members()]), 200


@api.route('/admin/members/<int:member_id>', methods=['DELETE'])
@login_required(can_manage_accounts)
@retry_db_operation()
def delete_member(member_id):
    accounts.delete_member(member_id)
    return jsonify({'message': 'Member removed'}), 200
