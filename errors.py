"""Error categories surfaced to API clients.

Every error carries an HTTP status and a stable ``code`` so the front end can
render specific messaging without parsing the text.
"""


class BookstoreError(Exception):
    status_code = 500
    code = 'server_error'
    default_message = 'An unexpected error occurred'

    def __init__(self, message=None, details=None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        body = {'error': self.message, 'code': self.code}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(BookstoreError):
    status_code = 400
    code = 'validation_error'
    default_message = 'Invalid request data'


class AuthenticationError(BookstoreError):
    status_code = 401
    code = 'unauthorized'
    default_message = 'Unauthorized access'


class PermissionDeniedError(BookstoreError):
    status_code = 403
    code = 'forbidden'
    default_message = 'You do not have permission to perform this action'


class EligibilityError(BookstoreError):
    """A business rule refuses the action, e.g. reviewing an unreceived book."""
    status_code = 403
    code = 'not_eligible'
    default_message = 'You are not eligible for this action'


class NotFoundError(BookstoreError):
    status_code = 404
    code = 'not_found'
    default_message = 'Resource not found'


class ConflictError(BookstoreError):
    status_code = 409
    code = 'conflict'
    default_message = 'The request conflicts with the current state'


class InsufficientStockError(ConflictError):
    code = 'insufficient_stock'
    default_message = 'Not enough stock'


class EmptyCartError(ConflictError):
    code = 'empty_cart'
    default_message = 'Your cart is empty'


class OrderStateError(ConflictError):
    code = 'invalid_order_state'
    default_message = 'Only pending orders can be changed'


class DuplicateReviewError(ConflictError):
    code = 'duplicate_review'
    default_message = 'You have already reviewed this book'


class DuplicateBookmarkError(ConflictError):
    code = 'duplicate_bookmark'
    default_message = 'Book is already bookmarked'


class EmailTakenError(ConflictError):
    code = 'email_taken'
    default_message = 'Email already exists'
