from datetime import datetime, timedelta
from decimal import Decimal

from accounts import create_admin, create_staff, register_member
from app import create_app
from models import Announcement, Book, db, utcnow

app = create_app()

with app.app_context():
    # Reset the database
    db.drop_all()
    db.create_all()
    print("🔄 Database reset")

    # Insert accounts
    create_admin("Admin User", "admin@example.com", "admin123")
    create_staff("Counter Staff", "staff@example.com", "staff123", position="Counter")
    members = [
        {"full_name": "Member One", "email": "member1@example.com", "password": "member123"},
        {"full_name": "Member Two", "email": "member2@example.com", "password": "member123"},
    ]
    for m in members:
        register_member(m["full_name"], m["email"], m["password"])
    print("✅ Accounts inserted")

    # Insert Books
    now = utcnow()
    books = [
        {"title": "Python Programming", "author": "John Zelle", "isbn": "9781590282410", "genre": "Programming",
         "language": "English", "format": "Paperback", "publisher": "Franklin, Beedle", "price": Decimal("39.99"),
         "publication_date": datetime(2017, 1, 1), "page_count": 552, "stock_quantity": 5},
        {"title": "Flask Web Development", "author": "Miguel Grinberg", "isbn": "9781491991732", "genre": "Web",
         "language": "English", "format": "Paperback", "publisher": "O'Reilly", "price": Decimal("44.99"),
         "publication_date": datetime(2018, 3, 1), "page_count": 316, "stock_quantity": 3,
         "discount_percent": Decimal("15"), "discount_start": now - timedelta(days=1), "discount_end": now + timedelta(days=14)},
        {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "9780132350884", "genre": "Software",
         "language": "English", "format": "Hardcover", "publisher": "Prentice Hall", "price": Decimal("49.99"),
         "publication_date": datetime(2008, 8, 1), "page_count": 464, "stock_quantity": 2, "is_bestseller": True},
        {"title": "Sapiens", "author": "Yuval Noah Harari", "isbn": "9780062316097", "genre": "History",
         "language": "English", "format": "Paperback", "publisher": "Harper", "price": Decimal("9.99"),
         "publication_date": datetime(2015, 2, 10), "page_count": 464, "stock_quantity": 12, "is_award_winner": True},
    ]
    for b in books:
        db.session.add(Book(**b))

    db.session.commit()
    print("✅ Books inserted")

    db.session.add(Announcement(
        title="Welcome",
        message="Order online and collect at the counter with your claim code.",
        start_time=now,
        end_time=now + timedelta(days=30),
        type="info",
    ))
    db.session.commit()
    print("✅ Announcement inserted")
