"""
Booking Service - Voucher evaluation

Vouchers are normalized when written and validated when a booking is made.
Usage is consumed with a compare-and-swap on `usage_count`, so two bookings
cannot both take the last slot of a limited voucher.
"""
import logging

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import NotFoundError, ValidationError, VoucherError
from .utils import end_of_local_day, generate_voucher_id, start_of_local_day, to_utc_naive, utc_now

logger = logging.getLogger(__name__)

VOUCHER_NOT_FOUND = 'VOUCHER_NOT_FOUND'
VOUCHER_INACTIVE = 'VOUCHER_INACTIVE'
VOUCHER_USAGE_LIMIT_EXCEEDED = 'VOUCHER_USAGE_LIMIT_EXCEEDED'
INVALID_MIN_ORDER_VALUE = 'INVALID_MIN_ORDER_VALUE'
VOUCHER_INVALID_DATE = 'VOUCHER_INVALID_DATE'

DISCOUNT_FIXED = 'fixed'
DISCOUNT_PERCENTAGE = 'percentage'

DEACTIVATED_BY_USAGE = 'usage_limit'
VOUCHER_STATUSES = ('active', 'inactive')

UPDATABLE_FIELDS = (
    'discount', 'discount_type', 'max_discount', 'min_order_value',
    'usage_limit', 'start_date', 'expiry_date', 'status',
)

CAS_ATTEMPTS = 5


def normalize_voucher(data):
    """Apply write-time rules to a voucher document (returns a new dict)"""
    voucher = dict(data)
    voucher['code'] = str(voucher.get('code') or '').strip().upper()
    voucher['discount_type'] = voucher.get('discount_type') or DISCOUNT_FIXED
    if voucher['discount_type'] not in (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE):
        raise ValidationError('Loại giảm giá không hợp lệ')

    try:
        discount = float(voucher.get('discount') or 0)
        max_discount = voucher.get('max_discount')
        max_discount = float(max_discount) if max_discount is not None else None
        voucher['min_order_value'] = float(voucher.get('min_order_value') or 0)
        voucher['usage_count'] = int(voucher.get('usage_count') or 0)
        if voucher.get('usage_limit') is not None:
            voucher['usage_limit'] = int(voucher['usage_limit'])
    except (TypeError, ValueError):
        raise ValidationError('Giá trị voucher không hợp lệ')

    if discount < 0:
        raise ValidationError('Giá trị giảm giá không được âm')
    if voucher['discount_type'] == DISCOUNT_PERCENTAGE:
        discount = min(discount, 100)
        voucher['max_discount'] = max_discount
    else:
        voucher['max_discount'] = None
    voucher['discount'] = discount

    try:
        for field in ('start_date', 'expiry_date'):
            if voucher.get(field) is not None:
                voucher[field] = to_utc_naive(voucher[field])
    except ValueError:
        raise ValidationError('Ngày không hợp lệ')
    start, expiry = voucher.get('start_date'), voucher.get('expiry_date')
    if start is not None and expiry is not None and start > expiry:
        voucher['start_date'] = expiry

    voucher['status'] = voucher.get('status') or 'active'
    if voucher['status'] not in VOUCHER_STATUSES:
        raise ValidationError('Trạng thái voucher không hợp lệ')
    return voucher


def create_voucher(db, data, now=None):
    now = now or utc_now()
    voucher = normalize_voucher({k: v for k, v in data.items() if k in UPDATABLE_FIELDS + ('code',)})
    if not voucher['code']:
        raise ValidationError('Mã voucher là bắt buộc')
    voucher['_id'] = generate_voucher_id()
    voucher['usage_count'] = 0
    voucher['created_at'] = now
    voucher['updated_at'] = now
    try:
        db.vouchers.insert_one(voucher)
    except DuplicateKeyError:
        raise ValidationError('Mã voucher đã tồn tại')
    logger.info("[VOUCHER] Created %s (%s)", voucher['_id'], voucher['code'])
    return voucher


def update_voucher(db, voucher_id, data, now=None):
    """Change an existing voucher; the write-time rules run on the merged result.

    The code and the usage count are not editable.
    """
    now = now or utc_now()
    existing = db.vouchers.find_one({'_id': voucher_id})
    if existing is None:
        raise NotFoundError('Không tìm thấy voucher', error_code=VOUCHER_NOT_FOUND)

    changes = {k: data[k] for k in UPDATABLE_FIELDS if k in data}
    merged = normalize_voucher({**existing, **changes})
    limit = merged.get('usage_limit')
    if limit is not None and limit < merged['usage_count']:
        raise ValidationError('Giới hạn sử dụng không được nhỏ hơn số lượt đã dùng')

    fields = {k: merged.get(k) for k in UPDATABLE_FIELDS}
    fields['updated_at'] = now
    if 'status' in changes:
        # an explicit status from an admin overrides the automatic one
        fields['deactivated_reason'] = None
    elif existing.get('deactivated_reason') == DEACTIVATED_BY_USAGE and (limit is None or limit > merged['usage_count']):
        fields['status'] = 'active'
        fields['deactivated_reason'] = None

    voucher = db.vouchers.find_one_and_update(
        {'_id': voucher_id}, {'$set': fields}, return_document=ReturnDocument.AFTER,
    )
    logger.info("[VOUCHER] Updated %s: %s", voucher_id, ', '.join(sorted(changes)) or 'no changes')
    return voucher


def list_vouchers(db, status=None):
    query = {'status': status} if status else {}
    return list(db.vouchers.find(query).sort('created_at', DESCENDING))


def list_available_vouchers(db, order_value=None, now=None):
    """Vouchers a guest could apply right now, newest first"""
    now = now or utc_now()
    candidates = db.vouchers.find({'status': 'active'}).sort('created_at', DESCENDING)
    return [v for v in candidates if is_voucher_valid(v, order_value, now)]


def calculate_discount(voucher, price):
    if price <= 0:
        return 0
    discount = float(voucher.get('discount') or 0)
    if voucher.get('discount_type') == DISCOUNT_PERCENTAGE:
        amount = price * discount / 100
        max_discount = voucher.get('max_discount')
        if max_discount is not None:
            amount = min(amount, float(max_discount))
        return amount
    return discount


def _in_date_window(voucher, now):
    start = voucher.get('start_date')
    expiry = voucher.get('expiry_date')
    if start is not None and now < start_of_local_day(start):
        return False
    if expiry is not None and now > end_of_local_day(expiry):
        return False
    return True


def _usage_left(voucher):
    limit = voucher.get('usage_limit')
    return limit is None or int(voucher.get('usage_count') or 0) < int(limit)


def is_voucher_valid(voucher, order_value=None, now=None):
    """Active, in its date window, uses left, and (if given) the order is large enough"""
    now = now or utc_now()
    return (
        voucher.get('status') == 'active'
        and _in_date_window(voucher, now)
        and _usage_left(voucher)
        and (order_value is None or order_value >= float(voucher.get('min_order_value') or 0))
    )


def voucher_still_applies(voucher, order_value, now=None):
    """Re-check for a booking that already holds one of the voucher's uses"""
    now = now or utc_now()
    return (
        voucher is not None
        and _in_date_window(voucher, now)
        and order_value >= float(voucher.get('min_order_value') or 0)
    )


def _failure(error_code, message):
    return {
        'success': False,
        'discount_amount': 0,
        'voucher': None,
        'error_code': error_code,
        'message': message,
    }


def validate_voucher(db, voucher_id, original_price, now=None):
    """Check a voucher for an order.

    Returns a dict with `success`, `discount_amount`, `voucher`,
    `error_code` and `message`. No voucher is a success with no discount.
    """
    if not voucher_id:
        return {'success': True, 'discount_amount': 0, 'voucher': None, 'error_code': None, 'message': None}

    now = now or utc_now()
    voucher = db.vouchers.find_one({'_id': voucher_id})
    if voucher is None:
        return _failure(VOUCHER_NOT_FOUND, 'Voucher không tồn tại')
    if voucher.get('status') != 'active':
        return _failure(VOUCHER_INACTIVE, 'Voucher không còn hoạt động')
    if not _usage_left(voucher):
        return _failure(VOUCHER_USAGE_LIMIT_EXCEEDED, 'Voucher đã hết lượt sử dụng')
    min_order = float(voucher.get('min_order_value') or 0)
    if original_price < min_order:
        return _failure(INVALID_MIN_ORDER_VALUE, f'Giá trị đơn hàng tối thiểu là {min_order:,.0f}')
    if not _in_date_window(voucher, now):
        return _failure(VOUCHER_INVALID_DATE, 'Voucher chưa bắt đầu hoặc đã hết hạn')

    discount = min(calculate_discount(voucher, original_price), original_price)
    return {'success': True, 'discount_amount': discount, 'voucher': voucher, 'error_code': None, 'message': None}


def consume_voucher(db, voucher, now=None):
    """Take one use of the voucher, deactivating it when the limit is hit."""
    now = now or utc_now()
    current = voucher
    for _ in range(CAS_ATTEMPTS):
        if current is None or current.get('status') != 'active':
            raise VoucherError('Voucher không còn hoạt động', error_code=VOUCHER_INACTIVE)
        if not _usage_left(current):
            raise VoucherError('Voucher đã hết lượt sử dụng', error_code=VOUCHER_USAGE_LIMIT_EXCEEDED)

        count = int(current.get('usage_count') or 0)
        update = {'usage_count': count + 1, 'updated_at': now}
        limit = current.get('usage_limit')
        if limit is not None and count + 1 >= int(limit):
            update['status'] = 'inactive'
            update['deactivated_reason'] = DEACTIVATED_BY_USAGE

        result = db.vouchers.update_one(
            {'_id': current['_id'], 'usage_count': current.get('usage_count', 0), 'status': 'active'},
            {'$set': update},
        )
        if result.modified_count == 1:
            return {**current, **update}
        current = db.vouchers.find_one({'_id': voucher['_id']})

    raise VoucherError('Voucher đang được sử dụng, vui lòng thử lại', error_code=VOUCHER_USAGE_LIMIT_EXCEEDED)


def release_voucher(db, voucher_id, now=None):
    """Give back one use. Reactivates only vouchers that ran out of uses."""
    if not voucher_id:
        return False
    now = now or utc_now()
    voucher = db.vouchers.find_one_and_update(
        {'_id': voucher_id, 'usage_count': {'$gt': 0}},
        {'$inc': {'usage_count': -1}, '$set': {'updated_at': now}},
    )
    if voucher is None:
        return False
    if voucher.get('status') == 'inactive' and voucher.get('deactivated_reason') == DEACTIVATED_BY_USAGE:
        db.vouchers.update_one(
            {'_id': voucher_id, 'deactivated_reason': DEACTIVATED_BY_USAGE},
            {'$set': {'status': 'active', 'deactivated_reason': None}},
        )
    logger.info("[VOUCHER] Released one use of %s", voucher_id)
    return True
