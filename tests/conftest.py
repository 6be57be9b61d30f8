"""Pytest fixtures for bookstore tests."""

import itertools
from datetime import datetime
from decimal import Decimal

import pytest

from app import create_app
from auth import EXTENSION_KEY, Identity, hash_password
from config import TestingConfig
from models import Admin, Book, Member, Role, Staff, db

PASSWORD = 'secret123'


@pytest.fixture(scope='session')
def password_hash():
    """One bcrypt hash shared by every test account."""
    return hash_password(PASSWORD)


@pytest.fixture
def app():
    """App on a fresh in-memory database, with its context pushed."""
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_book(app):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {
            'title': f'Book {n}',
            'isbn': f'978{n:010d}',
            'author': 'Jane Author',
            'genre': 'Fiction',
            'language': 'English',
            'format': 'Paperback',
            'publisher': 'Acme',
            'price': Decimal('10.00'),
            'publication_date': datetime(2020, 1, 1),
            'stock_quantity': 10,
        }
        fields.update(overrides)
        book = Book(**fields)
        db.session.add(book)
        db.session.commit()
        return book

    return _make


@pytest.fixture
def make_member(app, password_hash):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {'full_name': f'Member {n}', 'email': f'member{n}@example.com', 'password_hash': password_hash}
        fields.update(overrides)
        member = Member(**fields)
        db.session.add(member)
        db.session.commit()
        return member

    return _make


@pytest.fixture
def make_staff(app, password_hash):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {'full_name': f'Staff {n}', 'email': f'staff{n}@example.com', 'password_hash': password_hash}
        fields.update(overrides)
        staff = Staff(**fields)
        db.session.add(staff)
        db.session.commit()
        return staff

    return _make


@pytest.fixture
def make_admin(app, password_hash):
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {'full_name': f'Admin {n}', 'email': f'admin{n}@example.com', 'password_hash': password_hash}
        fields.update(overrides)
        admin = Admin(**fields)
        db.session.add(admin)
        db.session.commit()
        return admin

    return _make


def identity_for(account):
    if isinstance(account, Member):
        return Identity(subject_id=account.member_id, role=Role.MEMBER)
    if isinstance(account, Staff):
        return Identity(subject_id=account.staff_id, role=Role.STAFF)
    return Identity(subject_id=account.admin_id, role=Role.ADMIN)


@pytest.fixture
def auth_headers(app):
    """Bearer headers for an account object."""
    def _headers(account):
        token = app.extensions[EXTENSION_KEY].issue(identity_for(account))
        return {'Authorization': f'Bearer {token}'}

    return _headers


@pytest.fixture
def identity_of():
    return identity_for
