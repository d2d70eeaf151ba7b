"""
Booking Service - Error types

Every error carries the HTTP status and a machine readable code so the
Flask error handler can render `{success, message, errorCode}` uniformly.
"""


class BookingError(Exception):
    status_code = 400
    error_code = 'BOOKING_ERROR'

    def __init__(self, message, error_code=None, status_code=None, extra=None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}

    def to_dict(self):
        return {**self.extra, 'success': False, 'message': self.message, 'errorCode': self.error_code}


class ValidationError(BookingError):
    error_code = 'VALIDATION_ERROR'


class RoomUnavailableError(BookingError):
    error_code = 'ROOM_UNAVAILABLE'


class VoucherError(BookingError):
    error_code = 'VOUCHER_VALIDATION_ERROR'


class InvalidStateError(BookingError):
    error_code = 'INVALID_STATE'


class CancellationWindowError(BookingError):
    error_code = 'CANCELLATION_WINDOW_CLOSED'


class RefundError(BookingError):
    error_code = 'REFUND_FAILED'


class NotFoundError(BookingError):
    status_code = 404
    error_code = 'NOT_FOUND'


class ForbiddenError(BookingError):
    status_code = 403
    error_code = 'FORBIDDEN'


class GatewayError(BookingError):
    """Payment gateway unreachable, timed out or answered garbage."""
    status_code = 502
    error_code = 'GATEWAY_ERROR'
