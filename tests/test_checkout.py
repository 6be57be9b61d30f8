from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

import checkout
from carts import clear_cart, get_cart, remove_cart_item, set_cart_item
from checkout import CLAIM_CODE_ALPHABET, generate_claim_code, place_order, preview_cart
from errors import ConflictError, EmptyCartError, InsufficientStockError, NotFoundError, ValidationError
from models import Book, CartItem, Order, OrderStatus, db, utcnow
from notifications import BillNotifier


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send(self, email, subject, body):
        self.sent.append((email, subject, body))


class BrokenMailer:
    def send(self, email, subject, body):
        raise RuntimeError('smtp down')


class TestCart:
    def test_add_and_update_quantity(self, make_member, make_book):
        member = make_member()
        book = make_book()
        set_cart_item(member.member_id, book.book_id, 2)
        set_cart_item(member.member_id, book.book_id, 5)
        cart = get_cart(member.member_id)
        assert len(cart) == 1
        assert cart[0].quantity == 5

    def test_zero_quantity_removes_line(self, make_member, make_book):
        member = make_member()
        book = make_book()
        set_cart_item(member.member_id, book.book_id, 2)
        set_cart_item(member.member_id, book.book_id, 0)
        assert get_cart(member.member_id) == []

    def test_negative_quantity_rejected(self, make_member, make_book):
        member = make_member()
        book = make_book()
        with pytest.raises(ValidationError):
            set_cart_item(member.member_id, book.book_id, -1)

    def test_unknown_book(self, make_member):
        member = make_member()
        with pytest.raises(NotFoundError):
            set_cart_item(member.member_id, 999, 1)

    def test_unknown_member_is_not_treated_as_duplicate_line(self, make_book):
        book = make_book()
        with pytest.raises(IntegrityError):
            set_cart_item(999, book.book_id, 1)
        assert CartItem.query.count() == 0

    def test_quantity_above_stock(self, make_member, make_book):
        member = make_member()
        book = make_book(stock_quantity=2)
        with pytest.raises(InsufficientStockError):
            set_cart_item(member.member_id, book.book_id, 3)

    def test_unavailable_book(self, make_member, make_book):
        member = make_member()
        book = make_book(is_available_in_library=False)
        with pytest.raises(InsufficientStockError):
            set_cart_item(member.member_id, book.book_id, 1)

    def test_remove_missing_line(self, make_member, make_book):
        member = make_member()
        book = make_book()
        with pytest.raises(NotFoundError):
            remove_cart_item(member.member_id, book.book_id)

    def test_clear_cart(self, make_member, make_book):
        member = make_member()
        set_cart_item(member.member_id, make_book().book_id, 1)
        set_cart_item(member.member_id, make_book().book_id, 1)
        assert clear_cart(member.member_id) == 2
        assert get_cart(member.member_id) == []

    def test_preview_matches_checkout(self, make_member, make_book):
        member = make_member(successful_orders_count=12)
        now = utcnow()
        book = make_book(discount_percent=Decimal('10'), discount_start=now - timedelta(days=1), discount_end=now + timedelta(days=1))
        set_cart_item(member.member_id, book.book_id, 6)
        _, breakdown = preview_cart(member.member_id)
        order = place_order(member.member_id)
        assert breakdown.total == Decimal('46.17')
        assert order.total_amount == breakdown.total


class TestPlaceOrder:
    def test_creates_pending_order_and_snapshots(self, make_member, make_book):
        member = make_member()
        book = make_book(price=Decimal('20.00'), stock_quantity=5)
        set_cart_item(member.member_id, book.book_id, 3)

        order = place_order(member.member_id)

        assert order.status == OrderStatus.PENDING
        assert order.total_amount == Decimal('60.00')
        assert len(order.claim_code) == 10
        assert [(i.book_id, i.title, i.quantity, i.unit_price) for i in order.items] == [
            (book.book_id, book.title, 3, Decimal('20.00'))
        ]
        assert db.session.get(Book, book.book_id).stock_quantity == 2
        assert get_cart(member.member_id) == []

    def test_price_snapshot_survives_price_change(self, make_member, make_book):
        member = make_member()
        book = make_book(price=Decimal('20.00'))
        set_cart_item(member.member_id, book.book_id, 1)
        order = place_order(member.member_id)

        book.price = Decimal('99.00')
        db.session.commit()

        stored = db.session.get(Order, order.order_id)
        assert stored.items[0].unit_price == Decimal('20.00')
        assert stored.total_amount == Decimal('20.00')

    def test_sale_outside_window_is_ignored(self, make_member, make_book):
        member = make_member()
        now = utcnow()
        book = make_book(discount_percent=Decimal('50'), discount_start=now + timedelta(days=2), discount_end=now + timedelta(days=5))
        set_cart_item(member.member_id, book.book_id, 1)
        order = place_order(member.member_id)
        assert order.item_discount == Decimal('0.00')
        assert order.items[0].discount_percent == Decimal('0')

    def test_empty_cart(self, make_member):
        member = make_member()
        with pytest.raises(EmptyCartError):
            place_order(member.member_id)

    def test_unknown_member(self, app):
        with pytest.raises(NotFoundError):
            place_order(12345)

    def test_insufficient_stock_leaves_nothing_behind(self, make_member, make_book):
        member = make_member()
        plenty = make_book(stock_quantity=5)
        scarce = make_book(stock_quantity=3)
        set_cart_item(member.member_id, plenty.book_id, 1)
        set_cart_item(member.member_id, scarce.book_id, 3)
        scarce.stock_quantity = 2
        db.session.commit()

        with pytest.raises(InsufficientStockError) as exc:
            place_order(member.member_id)

        assert exc.value.details[0]['book_id'] == scarce.book_id
        assert db.session.get(Book, plenty.book_id).stock_quantity == 5
        assert db.session.get(Book, scarce.book_id).stock_quantity == 2
        assert Order.query.count() == 0
        assert len(get_cart(member.member_id)) == 2

    def test_last_unit_goes_to_one_member(self, make_member, make_book):
        first = make_member()
        second = make_member()
        book = make_book(stock_quantity=1)
        set_cart_item(first.member_id, book.book_id, 1)
        set_cart_item(second.member_id, book.book_id, 1)

        place_order(first.member_id)
        with pytest.raises(InsufficientStockError):
            place_order(second.member_id)

        assert db.session.get(Book, book.book_id).stock_quantity == 0
        assert Order.query.count() == 1

    def test_guarded_reserve_never_goes_negative(self, make_book):
        book = make_book(stock_quantity=1)
        with pytest.raises(InsufficientStockError):
            checkout._reserve_stock(book.book_id, 2)
        db.session.rollback()
        assert db.session.get(Book, book.book_id).stock_quantity == 1


class TestClaimCodes:
    def test_alphabet_and_length(self):
        code = generate_claim_code(12)
        assert len(code) == 12
        assert set(code) <= set(CLAIM_CODE_ALPHABET)

    def test_codes_are_unique_across_orders(self, make_member, make_book):
        book = make_book(stock_quantity=50)
        codes = set()
        for _ in range(5):
            member = make_member()
            set_cart_item(member.member_id, book.book_id, 1)
            codes.add(place_order(member.member_id).claim_code)
        assert len(codes) == 5

    def test_taken_code_is_skipped(self, make_member, make_book, monkeypatch):
        book = make_book()
        codes = iter(['AAAAAAAAAA', 'AAAAAAAAAA', 'BBBBBBBBBB'])
        monkeypatch.setattr(checkout, 'generate_claim_code', lambda length=10: next(codes))

        first, second = make_member(), make_member()
        set_cart_item(first.member_id, book.book_id, 1)
        set_cart_item(second.member_id, book.book_id, 1)
        assert place_order(first.member_id).claim_code == 'AAAAAAAAAA'
        assert place_order(second.member_id).claim_code == 'BBBBBBBBBB'

    def test_collision_at_commit_retries(self, make_member, make_book, monkeypatch):
        book = make_book(stock_quantity=5)
        first, second = make_member(), make_member()
        set_cart_item(first.member_id, book.book_id, 1)
        set_cart_item(second.member_id, book.book_id, 1)
        taken = place_order(first.member_id).claim_code

        # Simulates another request committing the same code between check and insert
        codes = iter([taken, 'ZZZZZZZZZZ'])
        monkeypatch.setattr(checkout, '_unused_claim_code', lambda length, attempts: next(codes))

        order = place_order(second.member_id)
        assert order.claim_code == 'ZZZZZZZZZZ'
        assert db.session.get(Book, book.book_id).stock_quantity == 3
        assert CartItem.query.filter_by(member_id=second.member_id).count() == 0

    def test_gives_up_when_no_code_is_free(self, make_member, make_book, monkeypatch):
        book = make_book()
        monkeypatch.setattr(checkout, 'generate_claim_code', lambda length=10: 'AAAAAAAAAA')
        first, second = make_member(), make_member()
        set_cart_item(first.member_id, book.book_id, 1)
        set_cart_item(second.member_id, book.book_id, 1)
        place_order(first.member_id)
        with pytest.raises(ConflictError):
            place_order(second.member_id)


class TestBillNotification:
    def test_bill_sent_after_commit(self, make_member, make_book):
        member = make_member()
        book = make_book()
        set_cart_item(member.member_id, book.book_id, 2)
        mailer = RecordingMailer()

        order = place_order(member.member_id, notifier=BillNotifier(mailer))

        assert len(mailer.sent) == 1
        email, subject, body = mailer.sent[0]
        assert email == member.email
        assert order.claim_code in subject
        assert order.claim_code in body

    def test_mail_failure_keeps_order(self, make_member, make_book):
        member = make_member()
        book = make_book()
        set_cart_item(member.member_id, book.book_id, 1)

        order = place_order(member.member_id, notifier=BillNotifier(BrokenMailer()))

        assert db.session.get(Order, order.order_id) is not None
        assert db.session.get(Book, book.book_id).stock_quantity == 9
