import logging

from sqlalchemy.exc import IntegrityError

from errors import DuplicateBookmarkError, NotFoundError
from models import Book, Bookmark, db, utcnow

logger = logging.getLogger(__name__)


def add_bookmark(member_id, book_id):
    if db.session.get(Book, book_id) is None:
        raise NotFoundError('Book not found')
    if Bookmark.query.filter_by(member_id=member_id, book_id=book_id).first():
        raise DuplicateBookmarkError()
    bookmark = Bookmark(member_id=member_id, book_id=book_id, bookmarked_at=utcnow())
    db.session.add(bookmark)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        if Bookmark.query.filter_by(member_id=member_id, book_id=book_id).first():
            raise DuplicateBookmarkError()
        logger.error(f"Bookmark failed: member_id={member_id} book_id={book_id}: {str(e)}")
        raise
    logger.debug(f"Bookmark added: member_id={member_id} book_id={book_id}")
    return bookmark


def remove_bookmark(member_id, book_id):
    bookmark = Bookmark.query.filter_by(member_id=member_id, book_id=book_id).first()
    if bookmark is None:
        raise NotFoundError('Bookmark not found')
    db.session.delete(bookmark)
    db.session.commit()
    logger.debug(f"Bookmark removed: member_id={member_id} book_id={book_id}")


def list_bookmarks(member_id):
    return (
        Bookmark.query.filter_by(member_id=member_id)
        .order_by(Bookmark.bookmarked_at.desc(), Bookmark.bookmark_id.desc())
        .all()
    )
