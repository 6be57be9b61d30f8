import calendar
import logging

from sqlalchemy import func, not_

from errors import ConflictError, NotFoundError, ValidationError
from models import Book, Order, OrderItem, OrderStatus, Review, db, utcnow

logger = logging.getLogger(__name__)

FACETS = {
    'authors': Book.author,
    'genres': Book.genre,
    'languages': Book.language,
    'formats': Book.format,
    'publishers': Book.publisher,
}

NULLABLE_FIELDS = ('discount_percent', 'discount_start', 'discount_end')

SET_FILTERS = (
    ('genres', Book.genre),
    ('authors', Book.author),
    ('languages', Book.language),
    ('formats', Book.format),
    ('publishers', Book.publisher),
)


def months_before(moment, months):
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _escape_like(term):
    return term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def _rating_subquery():
    return (
        db.session.query(
            Review.book_id.label('book_id'),
            func.avg(Review.rating).label('avg_rating'),
            func.count(Review.review_id).label('review_count'),
        )
        .group_by(Review.book_id)
        .subquery()
    )


def _sales_subquery():
    return (
        db.session.query(OrderItem.book_id.label('book_id'), func.sum(OrderItem.quantity).label('sold'))
        .join(Order, Order.order_id == OrderItem.order_id)
        .filter(Order.status != OrderStatus.CANCELLED)
        .group_by(OrderItem.book_id)
        .subquery()
    )


def search_books(query, now=None):
    """Filter, sort and page the catalog.

    Returns ``(rows, total_count)``, each row being
    ``(book, average_rating, review_count)``.
    """
    now = now or utcnow()
    ratings = _rating_subquery()
    sales = _sales_subquery()
    avg_rating = func.coalesce(ratings.c.avg_rating, 0)
    review_count = func.coalesce(ratings.c.review_count, 0)

    books = (
        db.session.query(Book, avg_rating.label('avg_rating'), review_count.label('review_count'))
        .outerjoin(ratings, ratings.c.book_id == Book.book_id)
        .outerjoin(sales, sales.c.book_id == Book.book_id)
    )

    if query.search:
        term = f'%{_escape_like(query.search)}%'
        books = books.filter(
            Book.title.ilike(term, escape='\\')
            | Book.isbn.ilike(term, escape='\\')
            | Book.description.ilike(term, escape='\\')
            | Book.author.ilike(term, escape='\\')
        )
    for field, column in SET_FILTERS:
        values = getattr(query, field)
        if values:
            books = books.filter(func.lower(column).in_([v.lower() for v in values]))

    if query.on_sale is not None:
        clause = Book.on_sale_clause(now)
        books = books.filter(clause if query.on_sale else not_(clause))
    if query.deals:
        books = books.filter(Book.on_sale_clause(now))
    if query.min_price is not None:
        books = books.filter(Book.price >= query.min_price)
    if query.max_price is not None:
        books = books.filter(Book.price <= query.max_price)
    if query.min_rating is not None:
        books = books.filter(avg_rating >= query.min_rating)
    if query.max_rating is not None:
        books = books.filter(avg_rating <= query.max_rating)
    if query.is_available_in_library is not None:
        books = books.filter(Book.is_available_in_library.is_(query.is_available_in_library))
    if query.in_stock is not None:
        books = books.filter(Book.stock_quantity > 0 if query.in_stock else Book.stock_quantity == 0)
    if query.is_award_winner is not None:
        books = books.filter(Book.is_award_winner.is_(query.is_award_winner))
    if query.is_bestseller is not None:
        books = books.filter(Book.is_bestseller.is_(query.is_bestseller))
    if query.new_releases:
        books = books.filter(Book.publication_date >= months_before(now, 3), Book.publication_date <= now)
    if query.new_arrivals:
        first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        books = books.filter(Book.publication_date >= first_of_month, Book.publication_date <= now)
    if query.coming_soon:
        books = books.filter(Book.publication_date > now)

    total = books.count()

    sort_column = {
        'title': Book.title,
        'date': Book.publication_date,
        'price': Book.price,
        'popularity': func.coalesce(sales.c.sold, 0),
    }[query.sort_by]
    ordering = sort_column.desc() if query.sort_descending else sort_column.asc()
    rows = (
        books.order_by(ordering, Book.book_id.asc())
        .offset((query.page - 1) * query.page_size)
        .limit(query.page_size)
        .all()
    )
    logger.debug(f"Fetched {len(rows)} of {total} books (page {query.page})")
    return rows, total


def get_book(book_id):
    book = db.session.get(Book, book_id)
    if not book:
        logger.debug(f"Book not found: book_id={book_id}")
        raise NotFoundError('Book not found')
    return book


def rating_summary(book_id):
    avg, count = (
        db.session.query(func.avg(Review.rating), func.count(Review.review_id))
        .filter(Review.book_id == book_id)
        .one()
    )
    return (round(float(avg), 2) if avg is not None else 0.0), count


def facet_values(facet):
    column = FACETS.get(facet)
    if column is None:
        raise NotFoundError(f'Unknown facet: {facet}')
    values = db.session.query(column).filter(column != '').distinct().order_by(column).all()
    return [v[0] for v in values]


def _check_isbn_free(isbn, book_id=None):
    existing = Book.query.filter_by(isbn=isbn)
    if book_id is not None:
        existing = existing.filter(Book.book_id != book_id)
    if existing.first():
        logger.debug(f"Duplicate ISBN: {isbn}")
        raise ConflictError('A book with this ISBN already exists')


def create_book(fields):
    _check_isbn_free(fields['isbn'])
    book = Book(**fields)
    db.session.add(book)
    db.session.commit()
    logger.debug(f"Book added: {book.title} (ISBN: {book.isbn})")
    return book


def update_book(book_id, fields):
    book = get_book(book_id)
    if 'isbn' in fields:
        _check_isbn_free(fields['isbn'], book_id)
    for name, value in fields.items():
        if value is None and name not in NULLABLE_FIELDS:
            continue
        setattr(book, name, value)
    if book.discount_start and book.discount_end and book.discount_end < book.discount_start:
        db.session.rollback()
        raise ValidationError(details=[{'field': 'discount_end', 'message': 'must not be before discount_start'}])
    db.session.commit()
    logger.debug(f"Book updated: book_id={book_id}")
    return book


def delete_book(book_id):
    book = get_book(book_id)
    db.session.delete(book)
    db.session.commit()
    logger.debug(f"Book deleted: book_id={book_id}")
