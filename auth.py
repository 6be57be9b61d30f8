import functools
import logging
from dataclasses import dataclass

import bcrypt
from flask import current_app, request, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from errors import AuthenticationError, PermissionDeniedError
from models import Admin, Member, Role, Staff, db

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'bookstore.identity'

ACCOUNT_MODELS = {Role.MEMBER: Member, Role.STAFF: Staff, Role.ADMIN: Admin}


@dataclass(frozen=True)
class Identity:
    subject_id: int
    role: str


def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def check_password(password, password_hash):
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


class IdentityIssuer:
    """Signs and verifies the credential carrying subject id and role."""

    def __init__(self, auth_config):
        self.config = auth_config
        self._serializer = URLSafeTimedSerializer(auth_config.signing_key, salt=auth_config.audience)

    def issue(self, identity):
        return self._serializer.dumps({
            'sub': identity.subject_id,
            'role': identity.role,
            'iss': self.config.issuer,
            'aud': self.config.audience,
        })

    def verify(self, token):
        try:
            claims = self._serializer.loads(token, max_age=self.config.max_age)
        except SignatureExpired:
            raise AuthenticationError('Credential has expired')
        except BadSignature:
            raise AuthenticationError('Invalid credential')
        if claims.get('iss') != self.config.issuer or claims.get('aud') != self.config.audience:
            raise AuthenticationError('Invalid credential')
        if claims.get('role') not in (Role.MEMBER, Role.STAFF, Role.ADMIN) or not isinstance(claims.get('sub'), int):
            raise AuthenticationError('Invalid credential')
        return Identity(subject_id=claims['sub'], role=claims['role'])


def get_issuer():
    return current_app.extensions[EXTENSION_KEY]


def authenticate(email, password):
    """Resolve an email/password pair to an identity.

    Accounts are looked up in the member, admin and staff tables in turn.
    """
    email = email.strip().lower()
    lookups = (
        (Member, Role.MEMBER, 'member_id'),
        (Admin, Role.ADMIN, 'admin_id'),
        (Staff, Role.STAFF, 'staff_id'),
    )
    for model, role, pk in lookups:
        account = model.query.filter_by(email=email).first()
        if account and check_password(password, account.password_hash):
            logger.debug(f"Authenticated {role} {account.email}")
            return Identity(subject_id=getattr(account, pk), role=role), account
    logger.debug(f"Failed login for email: {email}")
    raise AuthenticationError('Invalid credentials')


def start_session(identity):
    session['identity'] = {'sub': identity.subject_id, 'role': identity.role}
    return get_issuer().issue(identity)


def end_session():
    session.pop('identity', None)


def current_identity():
    """Identity from the bearer credential, else from the login session."""
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return get_issuer().verify(header[len('Bearer '):].strip())
    stored = session.get('identity')
    if stored:
        return Identity(subject_id=stored['sub'], role=stored['role'])
    return None


def login_required(policy=None):
    """Require a caller identity and, when given, a policy from :mod:`policies`."""
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            identity = current_identity()
            if identity is None:
                logger.error("Unauthorized access: no credential")
                raise AuthenticationError()
            if db.session.get(ACCOUNT_MODELS[identity.role], identity.subject_id) is None:
                logger.error(f"Unauthorized access: Invalid user {identity.role} {identity.subject_id}")
                end_session()
                raise AuthenticationError('Account no longer exists')
            if policy is not None and not policy(identity):
                logger.error(f"Access denied: {policy.__name__} refused {identity.role} {identity.subject_id}")
                raise PermissionDeniedError()
            return f(*args, **kwargs)
        return wrapped
    return decorator
