import logging

from errors import NotFoundError, ValidationError
from models import Announcement, db, utcnow

logger = logging.getLogger(__name__)


def active_announcements(now=None):
    now = now or utcnow()
    return (
        Announcement.query
        .filter(Announcement.start_time <= now, Announcement.end_time >= now)
        .order_by(Announcement.created_at.desc(), Announcement.announcement_id.desc())
        .all()
    )


def all_announcements():
    return Announcement.query.order_by(Announcement.created_at.desc(), Announcement.announcement_id.desc()).all()


def _check_window(start_time, end_time):
    if end_time < start_time:
        raise ValidationError(details=[{'field': 'end_time', 'message': 'must not be before start_time'}])


def create_announcement(title, message, start_time, end_time, type=None):
    _check_window(start_time, end_time)
    announcement = Announcement(
        title=title,
        message=message,
        start_time=start_time,
        end_time=end_time,
        type=type,
        created_at=utcnow(),
    )
    db.session.add(announcement)
    db.session.commit()
    logger.debug(f"Announcement created: {announcement.announcement_id} {title!r}")
    return announcement


def _get(announcement_id):
    announcement = db.session.get(Announcement, announcement_id)
    if announcement is None:
        raise NotFoundError('Announcement not found')
    return announcement


def update_announcement(announcement_id, title, message, start_time, end_time, type=None):
    _check_window(start_time, end_time)
    announcement = _get(announcement_id)
    announcement.title = title
    announcement.message = message
    announcement.start_time = start_time
    announcement.end_time = end_time
    announcement.type = type
    announcement.updated_at = utcnow()
    db.session.commit()
    logger.debug(f"Announcement updated: {announcement_id}")
    return announcement


def delete_announcement(announcement_id):
    announcement = _get(announcement_id)
    db.session.delete(announcement)
    db.session.commit()
    logger.debug(f"Announcement deleted: {announcement_id}")
