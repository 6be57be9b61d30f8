import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import and_, event, func, or_
from sqlalchemy.engine import Engine

db = SQLAlchemy()


def utcnow():
    # Stored timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


@event.listens_for(Engine, 'connect')
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


class Role:
    MEMBER = 'Member'
    STAFF = 'Staff'
    ADMIN = 'Admin'


class OrderStatus:
    PENDING = 'Pending'
    FULFILLED = 'Fulfilled'
    CANCELLED = 'Cancelled'


class Book(db.Model):
    __tablename__ = 'book'
    book_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    isbn = db.Column(db.String(20), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=False, default='')
    author = db.Column(db.String(120), nullable=False, default='')
    genre = db.Column(db.String(60), nullable=False, default='')
    language = db.Column(db.String(40), nullable=False, default='')
    format = db.Column(db.String(40), nullable=False, default='')
    publisher = db.Column(db.String(120), nullable=False, default='')
    price = db.Column(db.Numeric(10, 2), nullable=False)
    publication_date = db.Column(db.DateTime, nullable=False)
    page_count = db.Column(db.Integer, nullable=False, default=0)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_available_in_library = db.Column(db.Boolean, nullable=False, default=True)
    discount_percent = db.Column(db.Numeric(5, 2))
    discount_start = db.Column(db.DateTime)
    discount_end = db.Column(db.DateTime)
    is_award_winner = db.Column(db.Boolean, nullable=False, default=False)
    is_bestseller = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def is_on_sale(self, now=None):
        now = now or utcnow()
        if not self.discount_percent or self.discount_percent <= 0:
            return False
        if self.discount_start is not None and now < self.discount_start:
            return False
        if self.discount_end is not None and now > self.discount_end:
            return False
        return True

    def active_discount_percent(self, now=None):
        """Discount percent in force at ``now``, zero outside the sale window."""
        if self.is_on_sale(now):
            return Decimal(self.discount_percent)
        return Decimal('0')

    @classmethod
    def on_sale_clause(cls, now):
        return and_(
            func.coalesce(cls.discount_percent, 0) > 0,
            or_(cls.discount_start.is_(None), cls.discount_start <= now),
            or_(cls.discount_end.is_(None), cls.discount_end >= now),
        )


class Member(db.Model):
    __tablename__ = 'member'
    member_id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    membership_id = db.Column(db.String(36), unique=True, nullable=False, default=lambda: str(uuid.uuid4()))
    join_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    successful_orders_count = db.Column(db.Integer, nullable=False, default=0)


class Staff(db.Model):
    __tablename__ = 'staff'
    staff_id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    position = db.Column(db.String(60), nullable=False, default='New Staff')
    join_date = db.Column(db.DateTime, nullable=False, default=utcnow)


class Admin(db.Model):
    __tablename__ = 'admin'
    admin_id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)


class CartItem(db.Model):
    __tablename__ = 'cart_item'
    __table_args__ = (db.UniqueConstraint('member_id', 'book_id', name='uq_cart_item_member_book'),)
    cart_item_id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.member_id', ondelete='CASCADE'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id', ondelete='CASCADE'), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    book = db.relationship('Book', lazy='joined')


class Order(db.Model):
    __tablename__ = 'orders'
    order_id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.member_id', ondelete='CASCADE'), nullable=False)
    order_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING)
    claim_code = db.Column(db.String(32), unique=True, nullable=False)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    item_discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    bulk_discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    loyalty_discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    applied_bulk_low_discount = db.Column(db.Boolean, nullable=False, default=False)
    applied_bulk_high_discount = db.Column(db.Boolean, nullable=False, default=False)
    applied_loyalty_discount = db.Column(db.Boolean, nullable=False, default=False)
    is_cancelled = db.Column(db.Boolean, nullable=False, default=False)
    items = db.relationship(
        'OrderItem',
        cascade='all, delete-orphan',
        passive_deletes=True,
        lazy='selectin',
        order_by='OrderItem.order_item_id',
    )


class OrderItem(db.Model):
    __tablename__ = 'order_item'
    order_item_id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.order_id', ondelete='CASCADE'), nullable=False)
    # Kept when the book is deleted so the order history stays readable
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id', ondelete='SET NULL'))
    title = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)


class ProcessedOrder(db.Model):
    __tablename__ = 'processed_order'
    processed_order_id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.order_id', ondelete='CASCADE'), unique=True, nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey('staff.staff_id', ondelete='SET NULL'))
    processed_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    staff = db.relationship('Staff', lazy='joined')


class Review(db.Model):
    __tablename__ = 'review'
    __table_args__ = (db.UniqueConstraint('member_id', 'book_id', name='uq_review_member_book'),)
    review_id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id', ondelete='CASCADE'), nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('member.member_id', ondelete='CASCADE'), nullable=False)
    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.String(1000), nullable=False, default='')
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime)
    member = db.relationship('Member', lazy='joined')


class Bookmark(db.Model):
    __tablename__ = 'bookmark'
    __table_args__ = (db.UniqueConstraint('member_id', 'book_id', name='uq_bookmark_member_book'),)
    bookmark_id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.member_id', ondelete='CASCADE'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id', ondelete='CASCADE'), nullable=False)
    bookmarked_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    book = db.relationship('Book', lazy='joined')


class Announcement(db.Model):
    __tablename__ = 'announcement'
    announcement_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(100), nullable=False)
    message = db.Column(db.String(500), nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    type = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime)

    def is_active(self, now=None):
        now = now or utcnow()
        return self.start_time <= now <= self.end_time


class BroadcastMessage(db.Model):
    __tablename__ = 'broadcast_message'
    broadcast_message_id = db.Column(db.Integer, primary_key=True)
    message = db.Column(db.String(1000), nullable=False)
    sent_at = db.Column(db.DateTime, nullable=False, default=utcnow)
