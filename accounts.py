import logging

from sqlalchemy.exc import IntegrityError

from auth import ACCOUNT_MODELS, hash_password
from errors import EmailTakenError, NotFoundError
from models import Admin, Member, Staff, db

logger = logging.getLogger(__name__)


def email_in_use(email):
    email = email.lower()
    return any(
        model.query.filter_by(email=email).first() is not None
        for model in (Member, Staff, Admin)
    )


def _save_account(account):
    db.session.add(account)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise EmailTakenError()
    return account


def register_member(full_name, email, password):
    if email_in_use(email):
        raise EmailTakenError()
    member = _save_account(Member(full_name=full_name, email=email.lower(), password_hash=hash_password(password)))
    logger.debug(f"Member registered: {member.email}")
    return member


def create_staff(full_name, email, password, position='New Staff'):
    if email_in_use(email):
        raise EmailTakenError()
    staff = _save_account(Staff(
        full_name=full_name,
        email=email.lower(),
        password_hash=hash_password(password),
        position=position,
    ))
    logger.debug(f"Staff added: {staff.email}")
    return staff


def create_admin(full_name, email, password):
    if email_in_use(email):
        raise EmailTakenError()
    admin = _save_account(Admin(full_name=full_name, email=email.lower(), password_hash=hash_password(password)))
    logger.debug(f"Admin added: {admin.email}")
    return admin


def list_staff():
    return Staff.query.order_by(Staff.staff_id).all()


def list_members():
    return Member.query.order_by(Member.member_id).all()


def delete_staff(staff_id):
    staff = db.session.get(Staff, staff_id)
    if staff is None:
        raise NotFoundError('Staff not found')
    db.session.delete(staff)
    db.session.commit()
    logger.debug(f"Staff removed: staff_id={staff_id}")


def delete_member(member_id):
    """Remove a member; orders, reviews, bookmarks and cart go with them."""
    member = db.session.get(Member, member_id)
    if member is None:
        raise NotFoundError('Member not found')
    db.session.delete(member)
    db.session.commit()
    db.session.expunge_all()
    logger.debug(f"Member removed with dependents: member_id={member_id}")


def find_account(identity):
    model = ACCOUNT_MODELS[identity.role]
    account = db.session.get(model, identity.subject_id)
    if account is None:
        raise NotFoundError('Account not found')
    return account
