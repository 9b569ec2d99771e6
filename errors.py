import re


class PaymentServiceError(Exception):
    """Base error raised by the service layer.

    Each subclass carries the HTTP status and the machine-readable code the
    JSON error handlers in app.py report back to the caller.
    """
    code = 'error'
    status_code = 400

    def __init__(self, message='', details=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        return {'error': self.message, 'details': self.details, 'code': self.code}


class ValidationError(PaymentServiceError):
    code = 'validation_error'


class DuplicateEmailError(PaymentServiceError):
    code = 'duplicate_email'
    status_code = 409


class InvalidIdError(PaymentServiceError):
    code = 'invalid_id'


class InvalidStatusError(PaymentServiceError):
    code = 'invalid_status'


class EmptyUpdateError(PaymentServiceError):
    code = 'empty_update'


class InvalidTransitionError(PaymentServiceError):
    code = 'invalid_transition'
    status_code = 409


class NotFoundError(PaymentServiceError):
    code = 'not_found'
    status_code = 404


class StoreError(PaymentServiceError):
    code = 'store_error'
    status_code = 500


_URL_CREDENTIALS = re.compile(r'(\w+://)[^/\s:@]+(:[^/\s@]*)?@')


def scrub_credentials(text):
    """Strip user:password from any connection URL embedded in text."""
    return _URL_CREDENTIALS.sub(r'\1***@', str(text))


def store_error(exc, message='Database operation failed'):
    detail = scrub_credentials(getattr(exc, 'orig', None) or exc)
    err = StoreError(message, details=detail)
    err.code = getattr(exc, 'code', None) or StoreError.code
    return err
