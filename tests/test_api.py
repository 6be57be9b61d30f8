"""HTTP tests through the Flask test client."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

import bookmarks
from models import Bookmark, CartItem, Member, Order, Review, Staff, db, utcnow

PASSWORD = 'secret123'


class TestHealth:
    def test_health(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'

    def test_unknown_route_is_json(self, client):
        response = client.get('/api/nowhere')
        assert response.status_code == 404
        assert response.get_json()['code'] == 'not_found'


class TestAuth:
    def test_register_login_and_me(self, client):
        response = client.post('/api/auth/register', json={
            'full_name': 'Ada Reader', 'email': 'Ada@Example.com', 'password': 'hunter22',
        })
        assert response.status_code == 201
        assert response.get_json()['membership_id']

        response = client.post('/api/auth/login', json={'email': 'ada@example.com', 'password': 'hunter22'})
        assert response.status_code == 200
        body = response.get_json()
        assert body['role'] == 'Member'
        assert body['name'] == 'Ada Reader'
        assert body['token']

        # Session cookie from login
        me = client.get('/api/auth/me').get_json()
        assert me['email'] == 'ada@example.com'
        assert me['successful_orders_count'] == 0

        client.post('/api/auth/logout')
        assert client.get('/api/auth/me').status_code == 401

    def test_bearer_token(self, client):
        client.post('/api/auth/register', json={'full_name': 'Bo', 'email': 'bo@example.com', 'password': 'hunter22'})
        token = client.post('/api/auth/login', json={'email': 'bo@example.com', 'password': 'hunter22'}).get_json()['token']
        client.post('/api/auth/logout')

        response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200
        assert response.get_json()['role'] == 'Member'

    def test_staff_and_admin_login(self, client, make_staff, make_admin):
        staff = make_staff(position='Counter')
        admin = make_admin()
        assert client.post('/api/auth/login', json={'email': staff.email, 'password': PASSWORD}).get_json()['role'] == 'Staff'
        assert client.post('/api/auth/login', json={'email': admin.email, 'password': PASSWORD}).get_json()['role'] == 'Admin'

    def test_wrong_password(self, client, make_member):
        member = make_member()
        response = client.post('/api/auth/login', json={'email': member.email, 'password': 'nope'})
        assert response.status_code == 401
        assert response.get_json()['code'] == 'unauthorized'

    def test_email_taken_across_account_tables(self, client, make_staff):
        staff = make_staff()
        response = client.post('/api/auth/register', json={'full_name': 'X', 'email': staff.email, 'password': 'hunter22'})
        assert response.status_code == 409
        assert response.get_json()['code'] == 'email_taken'

    def test_register_validation_details(self, client):
        response = client.post('/api/auth/register', json={'full_name': 'X', 'email': 'not-an-email', 'password': '123'})
        assert response.status_code == 400
        body = response.get_json()
        assert body['code'] == 'validation_error'
        assert {d['field'] for d in body['details']} == {'email', 'password'}

    def test_tampered_token(self, client):
        response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-token'})
        assert response.status_code == 401


class TestBooks:
    def test_list_with_total_header(self, client, make_book):
        for n in range(3):
            make_book(title=f'Title {n}')
        response = client.get('/api/books?page_size=2&sort_by=title')
        assert response.status_code == 200
        assert response.headers['X-Total-Count'] == '3'
        assert [b['title'] for b in response.get_json()] == ['Title 0', 'Title 1']

    def test_bad_sort_key(self, client):
        response = client.get('/api/books?sort_by=colour')
        assert response.status_code == 400

    def test_detail_and_missing(self, client, make_book):
        book = make_book(description='About things')
        body = client.get(f'/api/books/{book.book_id}').get_json()
        assert body['description'] == 'About things'
        assert body['average_rating'] == 0.0
        assert client.get('/api/books/999').status_code == 404

    def test_sale_price(self, client, make_book):
        now = utcnow()
        book = make_book(price=Decimal('20.00'), discount_percent=Decimal('25'), discount_start=now - timedelta(days=1), discount_end=now + timedelta(days=1))
        body = client.get(f'/api/books/{book.book_id}').get_json()
        assert body['on_sale'] is True
        assert body['sale_price'] == 15.0

    def test_staff_manages_catalog(self, client, make_staff, auth_headers):
        headers = auth_headers(make_staff())
        response = client.post('/api/books', headers=headers, json={
            'title': 'Fresh', 'isbn': '9781111111111', 'price': '12.50', 'publication_date': '2024-01-01T00:00:00',
        })
        assert response.status_code == 201
        book_id = response.get_json()['book']['book_id']

        response = client.put(f'/api/books/{book_id}', headers=headers, json={'stock_quantity': 4})
        assert response.get_json()['book']['stock_quantity'] == 4
        assert response.get_json()['book']['title'] == 'Fresh'

        assert client.delete(f'/api/books/{book_id}', headers=headers).status_code == 200

    def test_member_cannot_edit_catalog(self, client, make_member, auth_headers):
        response = client.post('/api/books', headers=auth_headers(make_member()), json={})
        assert response.status_code == 403
        assert response.get_json()['code'] == 'forbidden'

    def test_anonymous_cannot_edit_catalog(self, client):
        assert client.post('/api/books', json={}).status_code == 401

    def test_facets(self, client, make_book):
        make_book(genre='Poetry')
        assert client.get('/api/books/facets/genres').get_json() == ['Poetry']


class TestShoppingFlow:
    def test_cart_checkout_fulfill_review(self, client, make_member, make_staff, make_book, auth_headers):
        member = make_member()
        staff = make_staff()
        book = make_book(price=Decimal('10.00'), stock_quantity=8)
        member_headers = auth_headers(member)

        response = client.post('/api/cart', headers=member_headers, json={'book_id': book.book_id, 'quantity': 6})
        assert response.status_code == 200
        cart = response.get_json()
        assert cart['summary']['bulk_tier'] == 'low'
        assert cart['summary']['total'] == 57.0

        response = client.post('/api/orders', headers=member_headers)
        assert response.status_code == 201
        order = response.get_json()['order']
        assert order['status'] == 'Pending'
        assert order['total_amount'] == 57.0
        assert client.get('/api/cart', headers=member_headers).get_json()['items'] == []

        response = client.post('/api/reviews', headers=member_headers, json={'book_id': book.book_id, 'rating': 5})
        assert response.status_code == 403
        assert response.get_json()['code'] == 'not_eligible'

        response = client.post('/api/staff/fulfill', headers=auth_headers(staff), json={'claim_code': order['claim_code']})
        assert response.status_code == 200
        assert response.get_json()['order']['status'] == 'Fulfilled'

        response = client.post('/api/staff/fulfill', headers=auth_headers(staff), json={'claim_code': order['claim_code']})
        assert response.status_code == 404

        assert client.get(f'/api/books/{book.book_id}/can-review', headers=member_headers).get_json()['can_review'] is True
        response = client.post('/api/reviews', headers=member_headers, json={'book_id': book.book_id, 'rating': 5, 'comment': 'Loved it'})
        assert response.status_code == 201

        reviews = client.get(f'/api/books/{book.book_id}/reviews').get_json()
        assert reviews['average_rating'] == 5.0
        assert reviews['reviews'][0]['member_name'] == member.full_name

        mine = client.get('/api/orders/mine', headers=member_headers).get_json()
        assert [o['status'] for o in mine] == ['Fulfilled']

    def test_checkout_conflicts(self, client, make_member, make_book, auth_headers):
        headers = auth_headers(make_member())
        response = client.post('/api/orders', headers=headers)
        assert response.status_code == 409
        assert response.get_json()['code'] == 'empty_cart'

        book = make_book(stock_quantity=1)
        response = client.post('/api/cart', headers=headers, json={'book_id': book.book_id, 'quantity': 2})
        assert response.status_code == 409
        assert response.get_json()['code'] == 'insufficient_stock'

        response = client.post('/api/cart', headers=headers, json={'book_id': book.book_id, 'quantity': -1})
        assert response.status_code == 400

    def test_cancel_own_order_only(self, client, make_member, make_book, auth_headers):
        owner, stranger = make_member(), make_member()
        book = make_book(stock_quantity=3)
        headers = auth_headers(owner)
        client.post('/api/cart', headers=headers, json={'book_id': book.book_id, 'quantity': 2})
        order_id = client.post('/api/orders', headers=headers).get_json()['order']['order_id']

        assert client.post(f'/api/orders/{order_id}/cancel', headers=auth_headers(stranger)).status_code == 404

        response = client.post(f'/api/orders/{order_id}/cancel', headers=headers)
        assert response.status_code == 200
        assert response.get_json()['order']['status'] == 'Cancelled'
        assert client.get(f'/api/books/{book.book_id}').get_json()['stock_quantity'] == 3

        response = client.post(f'/api/orders/{order_id}/cancel', headers=headers)
        assert response.status_code == 409
        assert response.get_json()['code'] == 'invalid_order_state'

    def test_staff_only_fulfils(self, client, make_admin, make_member, auth_headers):
        assert client.post('/api/staff/fulfill', headers=auth_headers(make_admin()), json={'claim_code': 'X'}).status_code == 403
        assert client.post('/api/staff/fulfill', headers=auth_headers(make_member()), json={'claim_code': 'X'}).status_code == 403

    def test_order_listings_hide_claim_codes(self, client, make_member, make_staff, make_admin, make_book, auth_headers):
        member = make_member()
        book = make_book()
        client.post('/api/cart', headers=auth_headers(member), json={'book_id': book.book_id, 'quantity': 1})
        client.post('/api/orders', headers=auth_headers(member))

        pending = client.get('/api/staff/orders/pending', headers=auth_headers(make_staff())).get_json()
        assert len(pending) == 1
        assert 'claim_code' not in pending[0]
        assert pending[0]['member']['email'] == member.email

        everything = client.get('/api/orders', headers=auth_headers(make_admin())).get_json()
        assert len(everything) == 1
        assert client.get('/api/orders?status=Lost', headers=auth_headers(make_admin())).status_code == 400

    def test_loyalty_eligibility(self, client, make_member, auth_headers):
        headers = auth_headers(make_member(successful_orders_count=10))
        assert client.get('/api/discounts/eligibility', headers=headers).get_json() == {
            'fulfilled_orders': 10, 'required_orders': 10, 'eligible': True,
        }


class TestBookmarks:
    def test_add_list_remove(self, client, make_member, make_book, auth_headers):
        headers = auth_headers(make_member())
        book = make_book(title='Saved')
        assert client.post('/api/bookmarks', headers=headers, json={'book_id': book.book_id}).status_code == 201

        response = client.post('/api/bookmarks', headers=headers, json={'book_id': book.book_id})
        assert response.status_code == 409
        assert response.get_json()['code'] == 'duplicate_bookmark'

        listed = client.get('/api/bookmarks', headers=headers).get_json()
        assert [b['book']['title'] for b in listed] == ['Saved']

        assert client.delete(f'/api/bookmarks/{book.book_id}', headers=headers).status_code == 200
        assert client.delete(f'/api/bookmarks/{book.book_id}', headers=headers).status_code == 404

    def test_unknown_book(self, client, make_member, auth_headers):
        response = client.post('/api/bookmarks', headers=auth_headers(make_member()), json={'book_id': 404})
        assert response.status_code == 404

    def test_foreign_key_failure_is_not_a_duplicate(self, make_book):
        with pytest.raises(IntegrityError):
            bookmarks.add_bookmark(999, make_book().book_id)
        assert Bookmark.query.count() == 0


class TestAnnouncements:
    def test_admin_publishes_and_public_reads_active(self, client, make_admin, auth_headers):
        headers = auth_headers(make_admin())
        now = utcnow()
        live = {'title': 'Open late', 'message': 'Until 9pm', 'start_time': (now - timedelta(hours=1)).isoformat(), 'end_time': (now + timedelta(days=1)).isoformat()}
        later = {'title': 'Sale', 'message': 'Next week', 'start_time': (now + timedelta(days=7)).isoformat(), 'end_time': (now + timedelta(days=8)).isoformat()}
        assert client.post('/api/announcements', headers=headers, json=live).status_code == 201
        created = client.post('/api/announcements', headers=headers, json=later).get_json()

        assert [a['title'] for a in client.get('/api/announcements/active').get_json()] == ['Open late']
        assert len(client.get('/api/announcements', headers=headers).get_json()) == 2

        updated = dict(later, title='Big sale')
        response = client.put(f"/api/announcements/{created['announcement_id']}", headers=headers, json=updated)
        assert response.get_json()['title'] == 'Big sale'
        assert client.delete(f"/api/announcements/{created['announcement_id']}", headers=headers).status_code == 200

    def test_window_must_not_be_inverted(self, client, make_admin, auth_headers):
        now = utcnow()
        response = client.post('/api/announcements', headers=auth_headers(make_admin()), json={
            'title': 'Oops', 'message': 'Backwards', 'start_time': now.isoformat(), 'end_time': (now - timedelta(days=1)).isoformat(),
        })
        assert response.status_code == 400

    def test_staff_cannot_manage(self, client, make_staff, auth_headers):
        assert client.get('/api/announcements', headers=auth_headers(make_staff())).status_code == 403


class TestAdminAccounts:
    def test_staff_lifecycle(self, client, make_admin, auth_headers):
        headers = auth_headers(make_admin())
        response = client.post('/api/admin/staff', headers=headers, json={
            'full_name': 'New Hire', 'email': 'hire@example.com', 'password': 'hunter22', 'position': 'Cashier',
        })
        assert response.status_code == 201
        staff_id = response.get_json()['staff_id']
        assert [s['position'] for s in client.get('/api/admin/staff', headers=headers).get_json()] == ['Cashier']
        assert client.delete(f'/api/admin/staff/{staff_id}', headers=headers).status_code == 200
        assert client.delete(f'/api/admin/staff/{staff_id}', headers=headers).status_code == 404

    def test_deleting_member_removes_their_data(self, client, make_admin, make_member, make_staff, make_book, auth_headers):
        member = make_member()
        member_id = member.member_id
        book, other = make_book(), make_book()
        headers = auth_headers(member)
        client.post('/api/cart', headers=headers, json={'book_id': book.book_id, 'quantity': 1})
        claim = client.post('/api/orders', headers=headers).get_json()['order']['claim_code']
        client.post('/api/staff/fulfill', headers=auth_headers(make_staff()), json={'claim_code': claim})
        client.post('/api/reviews', headers=headers, json={'book_id': book.book_id, 'rating': 4})
        client.post('/api/bookmarks', headers=headers, json={'book_id': other.book_id})
        client.post('/api/cart', headers=headers, json={'book_id': other.book_id, 'quantity': 1})

        response = client.delete(f'/api/admin/members/{member_id}', headers=auth_headers(make_admin()))

        assert response.status_code == 200
        assert db.session.get(Member, member_id) is None
        for model in (Order, Review, Bookmark, CartItem):
            assert model.query.filter_by(member_id=member_id).count() == 0

    def test_deleted_member_credential_is_rejected(self, client, make_admin, make_member, make_book, auth_headers):
        member = make_member()
        member_id = member.member_id
        book_id = make_book().book_id
        headers = auth_headers(member)
        client.delete(f'/api/admin/members/{member_id}', headers=auth_headers(make_admin()))

        for path in ('/api/cart', '/api/bookmarks'):
            response = client.post(path, headers=headers, json={'book_id': book_id, 'quantity': 1})
            assert response.status_code == 401
            assert response.get_json()['code'] == 'unauthorized'
        assert client.get('/api/auth/me', headers=headers).status_code == 401

    def test_deleted_staff_session_is_rejected(self, client, make_admin, make_staff):
        staff = make_staff()
        staff_id, email = staff.staff_id, staff.email
        assert client.post('/api/auth/login', json={'email': email, 'password': PASSWORD}).status_code == 200
        assert client.get('/api/staff/orders/pending').status_code == 200

        db.session.delete(db.session.get(Staff, staff_id))
        db.session.commit()

        assert client.get('/api/staff/orders/pending').status_code == 401

    def test_member_cannot_list_members(self, client, make_member, auth_headers):
        assert client.get('/api/admin/members', headers=auth_headers(make_member())).status_code == 403


@pytest.mark.parametrize('method, path', [
    ('get', '/api/cart'),
    ('post', '/api/orders'),
    ('get', '/api/orders/mine'),
    ('post', '/api/reviews'),
    ('get', '/api/bookmarks'),
    ('get', '/api/admin/staff'),
])
def test_requires_login(client, method, path):
    response = getattr(client, method)(path)
    assert response.status_code == 401
    assert response.get_json()['code'] == 'unauthorized'


def test_single_order_visible_to_owner_only(client, make_member, make_book, auth_headers):
    owner, stranger = make_member(), make_member()
    book = make_book()
    client.post('/api/cart', headers=auth_headers(owner), json={'book_id': book.book_id, 'quantity': 1})
    order_id = client.post('/api/orders', headers=auth_headers(owner)).get_json()['order']['order_id']

    response = client.get(f'/api/orders/{order_id}', headers=auth_headers(owner))
    assert response.status_code == 200
    assert response.get_json()['claim_code']
    assert client.get(f'/api/orders/{order_id}', headers=auth_headers(stranger)).status_code == 404
    assert client.get('/api/orders/999', headers=auth_headers(owner)).status_code == 404
