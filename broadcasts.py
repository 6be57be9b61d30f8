import logging

from models import BroadcastMessage, db, utcnow

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10


def record_order_placed(order):
    """Stage the public "new order" message in the checkout transaction."""
    titles = [item.title for item in order.items]
    message = f"New Order Placed! {len(titles)} books ordered: {', '.join(titles)}"
    db.session.add(BroadcastMessage(message=message, sent_at=utcnow()))
    logger.debug(f"Broadcast staged: {message}")


def recent_messages(limit=RECENT_LIMIT):
    return (
        BroadcastMessage.query
        .order_by(BroadcastMessage.sent_at.desc(), BroadcastMessage.broadcast_message_id.desc())
        .limit(limit)
        .all()
    )
