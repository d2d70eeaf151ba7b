"""
Booking Service - Utility Functions

Datetimes are stored as naive UTC (the pymongo default). Anything shown
to the hotel or compared by calendar day goes through local time first.
"""
import datetime
import uuid

from .config import Config


def local_tz():
    return datetime.timezone(datetime.timedelta(hours=Config.TIMEZONE_OFFSET_HOURS))


def utc_now():
    """Current UTC time as a naive datetime"""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_local(dt):
    """Naive UTC (or aware) datetime -> aware local datetime"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(local_tz())


def local_date(value):
    """Calendar day in hotel local time for a date, datetime or ISO string"""
    if isinstance(value, str):
        value = parse_datetime(value)
    if isinstance(value, datetime.datetime):
        return to_local(value).date()
    if isinstance(value, datetime.date):
        return value
    raise ValueError(f'Unsupported date value: {value!r}')


def parse_datetime(value):
    """Parse client input into something local_date() understands.

    `2024-07-01` is a local calendar day; a full ISO timestamp without an
    offset is taken as UTC, the way it was stored.
    """
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError('Empty date')
    text = value.strip()
    if len(text) == 10:
        return datetime.date.fromisoformat(text)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.datetime.fromisoformat(text)


def to_utc_naive(value):
    """Any accepted date input -> naive UTC datetime (bare dates: local midnight)"""
    value = parse_datetime(value)
    if not isinstance(value, datetime.datetime):
        return start_of_local_day(value)
    if value.tzinfo is not None:
        return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


def _at_local_hour(day, hour):
    local = datetime.datetime(day.year, day.month, day.day, hour, tzinfo=local_tz())
    return local.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def normalize_check_in(value):
    """Check-in is always 14:00 local on the requested day"""
    return _at_local_hour(local_date(value), Config.CHECK_IN_HOUR)


def normalize_check_out(value):
    """Check-out is always 12:00 local on the requested day"""
    return _at_local_hour(local_date(value), Config.CHECK_OUT_HOUR)


def start_of_local_day(value):
    return _at_local_hour(local_date(value), 0)


def end_of_local_day(value):
    day_start = start_of_local_day(value)
    return day_start + datetime.timedelta(days=1) - datetime.timedelta(microseconds=1)


def stay_nights(check_in, check_out):
    """Local calendar nights [check_in day, check_out day) as YYYY-MM-DD strings"""
    first = local_date(check_in)
    last = local_date(check_out)
    nights = []
    day = first
    while day < last:
        nights.append(day.isoformat())
        day += datetime.timedelta(days=1)
    return nights


def generate_id(prefix, length=8):
    return f"{prefix}{uuid.uuid4().hex[:length].upper()}"


def generate_booking_id():
    """Generate unique booking ID"""
    return generate_id('BOOK')


def generate_payment_id():
    return generate_id('PAY', 10)


def generate_voucher_id():
    return generate_id('VCH')


def _iso(value):
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return value.isoformat() + 'Z'
    return value


def format_booking_response(booking):
    """Format booking data for API response"""
    return {
        '_id': booking['_id'],
        'user_id': booking.get('user_id', ''),
        'room_id': booking.get('room_id', ''),
        'hotel_id': booking.get('hotel_id'),
        'check_in': _iso(booking.get('check_in')),
        'check_out': _iso(booking.get('check_out')),
        'nights': booking.get('nights', 0),
        'voucher_id': booking.get('voucher_id'),
        'original_price': booking.get('original_price', 0),
        'discount_amount': booking.get('discount_amount', 0),
        'final_price': booking.get('final_price', 0),
        'status': booking.get('status', Config.STATUS_PENDING),
        'payment_status': booking.get('payment_status', 'unpaid'),
        'payment_method': booking.get('payment_method', Config.DEFAULT_PAYMENT_METHOD),
        'booking_for': booking.get('booking_for', 'self'),
        'contact_info': booking.get('contact_info', {}),
        'guest_info': booking.get('guest_info'),
        'special_requests': booking.get('special_requests', {}),
        'retry_count': booking.get('retry_count', 0),
        'cancelled_at': _iso(booking.get('cancelled_at')),
        'cancellation_reason': booking.get('cancellation_reason'),
        'refund_amount': booking.get('refund_amount'),
        'created_at': _iso(booking.get('created_at')),
        'updated_at': _iso(booking.get('updated_at')),
    }


def format_payment_response(payment):
    """Format payment ledger entry for API response"""
    return {
        '_id': payment['_id'],
        'booking_id': payment.get('booking_id'),
        'transaction_id': payment.get('transaction_id'),
        'payment_method': payment.get('payment_method'),
        'amount': payment.get('amount', 0),
        'status': payment.get('status'),
        'gateway_txn_id': payment.get('gateway_txn_id'),
        'refund_amount': payment.get('refund_amount'),
        'refund_timestamp': _iso(payment.get('refund_timestamp')),
        'refund_fail_reason': payment.get('refund_fail_reason'),
        'created_at': _iso(payment.get('created_at')),
        'updated_at': _iso(payment.get('updated_at')),
    }


def format_voucher_response(voucher):
    """Format voucher data for API response"""
    limit = voucher.get('usage_limit')
    return {
        '_id': voucher['_id'],
        'code': voucher.get('code'),
        'discount_type': voucher.get('discount_type'),
        'discount': voucher.get('discount', 0),
        'max_discount': voucher.get('max_discount'),
        'min_order_value': voucher.get('min_order_value', 0),
        'usage_limit': limit,
        'usage_count': voucher.get('usage_count', 0),
        'remaining_uses': None if limit is None else max(limit - voucher.get('usage_count', 0), 0),
        'start_date': _iso(voucher.get('start_date')),
        'expiry_date': _iso(voucher.get('expiry_date')),
        'status': voucher.get('status'),
    }
