"""
Booking Service - Booking lifecycle

Status moves: pending -> confirmed (paid) -> completed, and
pending|confirmed -> cancelled. Every status write is conditional on the
current status so a late callback can never revive a cancelled booking.
"""
import datetime
import logging

from pymongo import DESCENDING, ReturnDocument

from .availability import claim_room_nights, is_room_available, release_room_nights
from .config import Config
from .emails import booking_created_email, retry_payment_email
from .errors import (
    CancellationWindowError, ForbiddenError, GatewayError, InvalidStateError, NotFoundError, RefundError,
    RoomUnavailableError, ValidationError, VoucherError,
)
from .ledger import COMPLETED, PAID_STATUSES, REFUND_FAILED, REFUNDING, PaymentLedger
from .pricing import quote
from .services import best_effort
from .utils import generate_booking_id, local_date, normalize_check_in, normalize_check_out, utc_now
from .vouchers import consume_voucher, release_voucher, validate_voucher, voucher_still_applies

logger = logging.getLogger(__name__)

REASON_USER = 'user_requested'
REASON_TIMEOUT = 'payment_timeout'
REASON_ADMIN = 'admin'

LISTING_FILTERS = ('status', 'payment_status', 'payment_method', 'hotel_id', 'user_id')
MAX_PAGE_SIZE = 100


def release_booking_holds(db, booking, now):
    """Free the booking's nights and give its voucher use back (once)."""
    released = release_room_nights(db, booking['_id'])
    if released:
        logger.info("[BOOKING] Released %s night(s) of %s", released, booking['_id'])

    if booking.get('voucher_id'):
        result = db.bookings.update_one(
            {'_id': booking['_id'], 'voucher_released': {'$ne': True}},
            {'$set': {'voucher_released': True}},
        )
        if result.modified_count == 1:
            release_voucher(db, booking['voucher_id'], now)


def mark_booking_confirmed(db, booking_id, payment_id, now):
    return db.bookings.find_one_and_update(
        {'_id': booking_id, 'status': {'$in': list(Config.ACTIVE_BOOKING_STATUSES)}},
        {'$set': {
            'status': Config.STATUS_CONFIRMED,
            'payment_status': 'paid',
            'payment_id': payment_id,
            'paid_at': now,
            'updated_at': now,
        }},
        return_document=ReturnDocument.AFTER,
    )


def mark_payment_failed(db, booking_id, now):
    db.bookings.update_one(
        {'_id': booking_id, 'status': Config.STATUS_PENDING, 'payment_status': {'$ne': 'paid'}},
        {'$set': {'payment_status': 'failed', 'updated_at': now}},
    )


def mark_booking_cancelled(db, booking_id, reason, now, from_statuses=None, extra=None, unpaid_only=False):
    """Cancel if still in one of `from_statuses`; returns the booking or None"""
    fields = {
        'status': Config.STATUS_CANCELLED,
        'cancelled_at': now,
        'cancellation_reason': reason,
        'updated_at': now,
    }
    if extra:
        fields.update(extra)
    query = {'_id': booking_id, 'status': {'$in': list(from_statuses or Config.ACTIVE_BOOKING_STATUSES)}}
    if unpaid_only:
        query['payment_status'] = {'$ne': 'paid'}
    booking = db.bookings.find_one_and_update(
        query,
        {'$set': fields},
        return_document=ReturnDocument.AFTER,
    )
    if booking is not None:
        release_booking_holds(db, booking, now)
    return booking


def _user_id(user):
    return str(user.get('user_id') or user.get('_id') or '')


def _is_admin(user):
    return user.get('role') == 'admin'


def _is_privileged(user):
    return user.get('role') in ('admin', 'partner')


class BookingManager:
    """Booking lifecycle: create, retry payment, cancel, status changes.

    Built once at startup with the storage, the gateways keyed by payment
    method and the notification client.
    """

    def __init__(self, db, gateways, notifier, ledger=None):
        self.db = db
        self.gateways = gateways
        self.notifier = notifier
        self.ledger = ledger or PaymentLedger(db)

    def gateway_for(self, payment_method):
        gateway = self.gateways.get(payment_method)
        if gateway is None:
            raise ValidationError(
                f'Phương thức thanh toán {payment_method} chưa được hỗ trợ',
                error_code='UNSUPPORTED_PAYMENT_METHOD',
            )
        return gateway

    def _load(self, booking_id):
        booking = self.db.bookings.find_one({'_id': booking_id})
        if booking is None:
            raise NotFoundError('Không tìm thấy đặt phòng')
        return booking

    # ---------------------------
    # Create
    # ---------------------------

    @staticmethod
    def _validate_contact(data):
        contact = data.get('contact_info') or {}
        missing = [f for f in ('name', 'email', 'phone') if not str(contact.get(f) or '').strip()]
        if missing:
            raise ValidationError(f"Thiếu thông tin liên hệ: {', '.join(missing)}")
        return {f: str(contact[f]).strip() for f in ('name', 'email', 'phone')}

    @staticmethod
    def _validate_guest(data):
        guest = data.get('guest_info') or {}
        missing = [f for f in ('name', 'phone') if not str(guest.get(f) or '').strip()]
        if missing:
            raise ValidationError(f"Thiếu thông tin người lưu trú: {', '.join(missing)}")
        cleaned = {'name': str(guest['name']).strip(), 'phone': str(guest['phone']).strip()}
        if str(guest.get('email') or '').strip():
            cleaned['email'] = str(guest['email']).strip()
        return cleaned

    @staticmethod
    def _validated_dates(raw_check_in, raw_check_out, now):
        if not raw_check_in or not raw_check_out:
            raise ValidationError('Ngày nhận phòng và trả phòng là bắt buộc')
        try:
            check_in = normalize_check_in(raw_check_in)
            check_out = normalize_check_out(raw_check_out)
        except ValueError:
            raise ValidationError('Ngày không hợp lệ')
        if local_date(check_in) < local_date(now):
            raise ValidationError('Ngày nhận phòng không được ở trong quá khứ')
        if check_out <= check_in:
            raise ValidationError('Ngày trả phòng phải sau ngày nhận phòng')
        return check_in, check_out

    def create_booking(self, user, data, client_ip='127.0.0.1', now=None):
        """Validate, price and persist a booking, then start its payment.

        Returns {'booking', 'payment_url', 'transaction_id'}.
        """
        now = now or utc_now()
        user_id = _user_id(user)
        contact = self._validate_contact(data)
        booking_for = data.get('booking_for') or 'self'
        if booking_for not in ('self', 'other'):
            raise ValidationError('booking_for không hợp lệ')
        guest = self._validate_guest(data) if booking_for == 'other' else None

        payment_method = data.get('payment_method') or Config.DEFAULT_PAYMENT_METHOD
        if payment_method not in Config.PAYMENT_METHODS:
            raise ValidationError('Phương thức thanh toán không hợp lệ')
        gateway = self.gateway_for(payment_method)

        check_in, check_out = self._validated_dates(data.get('check_in'), data.get('check_out'), now)

        room = self.db.rooms.find_one({'_id': data.get('room_id')})
        if room is None:
            raise NotFoundError('Không tìm thấy phòng')
        if room.get('status') == 'maintenance':
            raise RoomUnavailableError('Phòng đang bảo trì')
        if not is_room_available(self.db, room['_id'], check_in, check_out):
            raise RoomUnavailableError('Phòng đã được đặt trong khoảng thời gian này')

        price = quote(room.get('price', 0), check_in, check_out)
        voucher_id = data.get('voucher_id') or None
        voucher_check = validate_voucher(self.db, voucher_id, price['original_price'], now)
        if not voucher_check['success']:
            raise VoucherError(voucher_check['message'], error_code=voucher_check['error_code'])
        price = quote(room.get('price', 0), check_in, check_out, voucher_check['discount_amount'])

        special = data.get('special_requests') or {}
        booking = {
            '_id': generate_booking_id(),
            'user_id': user_id,
            'room_id': room['_id'],
            'hotel_id': room.get('hotel_id'),
            'check_in': check_in,
            'check_out': check_out,
            'nights': price['nights'],
            'voucher_id': voucher_id,
            'original_price': price['original_price'],
            'discount_amount': price['discount_amount'],
            'final_price': price['final_price'],
            'status': Config.STATUS_PENDING,
            'payment_status': 'unpaid',
            'payment_method': payment_method,
            'booking_for': booking_for,
            'contact_info': contact,
            'guest_info': guest,
            'special_requests': {
                'early_check_in': bool(special.get('early_check_in')),
                'late_check_out': bool(special.get('late_check_out')),
                'additional_requests': str(special.get('additional_requests') or ''),
            },
            'payment_id': None,
            'retry_count': 0,
            'last_retry_at': None,
            'cancelled_at': None,
            'cancellation_reason': None,
            'created_at': now,
            'updated_at': now,
        }
        self._persist(booking, voucher_check['voucher'], now)
        logger.info("[BOOKING] Created %s for room %s (%s)", booking['_id'], room['_id'], price['final_price'])

        self._notify_created(booking, room)

        try:
            payment = gateway.create_payment_url(booking, client_ip, now)
        except GatewayError as exc:
            raise GatewayError(
                'Không thể tạo liên kết thanh toán, vui lòng thử thanh toán lại',
                status_code=500,
                extra={'bookingId': booking['_id'], 'detail': exc.message},
            )

        booking = self.db.bookings.find_one({'_id': booking['_id']}) or booking
        return {'booking': booking, 'payment_url': payment['pay_url'], 'transaction_id': payment['transaction_id']}

    def _persist(self, booking, voucher, now):
        """Claim nights, take the voucher use, insert. All or nothing."""
        claim_room_nights(self.db, booking['room_id'], booking['_id'], booking['check_in'], booking['check_out'], now)
        try:
            if voucher is not None:
                consume_voucher(self.db, voucher, now)
            try:
                self.db.bookings.insert_one(booking)
            except Exception:
                if voucher is not None:
                    release_voucher(self.db, voucher['_id'], now)
                raise
        except Exception:
            release_room_nights(self.db, booking['_id'])
            raise

    def _hotel_name(self, room):
        hotel = self.db.hotels.find_one({'_id': room.get('hotel_id')}) if room.get('hotel_id') else None
        return (hotel or {}).get('name') or 'khách sạn'

    @best_effort
    def _notify_created(self, booking, room):
        self.notifier.notify(
            booking['user_id'],
            'Đặt phòng thành công',
            f"Đặt phòng {booking['_id']} đã được tạo, vui lòng hoàn tất thanh toán.",
            'booking',
            {'booking_id': booking['_id']},
        )
        hotel_name = self._hotel_name(room)
        subject, html = booking_created_email(booking, room, hotel_name, for_booker=True)
        self.notifier.send_email(booking['contact_info']['email'], subject, html)
        guest = booking.get('guest_info') or {}
        if booking.get('booking_for') == 'other' and guest.get('email'):
            subject, html = booking_created_email(booking, room, hotel_name, for_booker=False)
            self.notifier.send_email(guest['email'], subject, html)

    # ---------------------------
    # Retry payment
    # ---------------------------

    def retry_payment(self, user, booking_id, payment_method=None, client_ip='127.0.0.1', now=None):
        """New payment attempt for an unpaid pending booking."""
        now = now or utc_now()
        booking = self._load(booking_id)
        if booking.get('user_id') != _user_id(user):
            raise ForbiddenError('Bạn không có quyền với đặt phòng này')
        if booking.get('status') != Config.STATUS_PENDING:
            raise InvalidStateError('Chỉ có thể thanh toán lại đặt phòng đang chờ')
        if booking.get('payment_status') == 'paid' or self.ledger.find_latest(booking_id, PAID_STATUSES):
            raise InvalidStateError('Đặt phòng đã được thanh toán')
        if now >= booking['check_in']:
            raise InvalidStateError('Đã quá thời gian nhận phòng')
        if int(booking.get('retry_count') or 0) >= Config.MAX_PAYMENT_RETRIES:
            raise InvalidStateError('Đã vượt quá số lần thanh toán lại cho phép', error_code='RETRY_LIMIT_EXCEEDED')
        if now - booking['created_at'] > datetime.timedelta(hours=Config.RETRY_WINDOW_HOURS):
            raise InvalidStateError('Đã quá thời hạn thanh toán lại', error_code='RETRY_WINDOW_EXPIRED')
        if payment_window_expired(booking, now):
            self.expire_booking(booking, now)
            raise InvalidStateError('Đặt phòng đã bị hủy do quá hạn thanh toán', error_code='PAYMENT_TIMEOUT')

        if not is_room_available(self.db, booking['room_id'], booking['check_in'], booking['check_out'],
                                 exclude_booking_id=booking_id):
            raise RoomUnavailableError('Phòng không còn trống trong khoảng thời gian này')
        room = self.db.rooms.find_one({'_id': booking['room_id']})
        if room is None:
            raise NotFoundError('Không tìm thấy phòng')
        nights = booking.get('nights') or 1
        if float(room.get('price', 0)) * nights != float(booking.get('original_price', 0)):
            raise InvalidStateError('Giá phòng đã thay đổi, vui lòng đặt lại', error_code='PRICE_CHANGED')
        if booking.get('voucher_id'):
            voucher = self.db.vouchers.find_one({'_id': booking['voucher_id']})
            if not voucher_still_applies(voucher, booking.get('original_price', 0), now):
                raise VoucherError('Voucher không còn hợp lệ', error_code='VOUCHER_INVALID_DATE')

        method = payment_method or booking.get('payment_method') or Config.DEFAULT_PAYMENT_METHOD
        gateway = self.gateway_for(method)

        booking = self.db.bookings.find_one_and_update(
            {'_id': booking_id, 'status': Config.STATUS_PENDING, 'retry_count': booking.get('retry_count', 0)},
            {'$inc': {'retry_count': 1}, '$set': {'last_retry_at': now, 'payment_method': method, 'updated_at': now}},
            return_document=ReturnDocument.AFTER,
        )
        if booking is None:
            raise InvalidStateError('Đặt phòng vừa được cập nhật, vui lòng thử lại')

        payment = gateway.create_payment_url(booking, client_ip, now)
        logger.info("[BOOKING] Retry %s for %s via %s", booking['retry_count'], booking_id, method)
        self._notify_retry(booking, payment['pay_url'])

        booking = self.db.bookings.find_one({'_id': booking_id}) or booking
        return {'booking': booking, 'payment_url': payment['pay_url'], 'transaction_id': payment['transaction_id']}

    @best_effort
    def _notify_retry(self, booking, pay_url):
        self.notifier.notify(
            booking['user_id'],
            'Thanh toán lại',
            f"Bạn đã yêu cầu thanh toán lại cho đặt phòng {booking['_id']} (lần {booking['retry_count']}).",
            'booking',
            {'booking_id': booking['_id']},
        )
        subject, html = retry_payment_email(booking, pay_url)
        self.notifier.send_email((booking.get('contact_info') or {}).get('email'), subject, html)

    # ---------------------------
    # Cancel / expire
    # ---------------------------

    def cancel_booking(self, requester, booking_id, now=None):
        """Cancel a booking, refunding it first when it was paid.

        Returns {'booking', 'refund_status'} where refund_status is None
        (nothing was paid), 'refunded' or 'processing'.
        """
        now = now or utc_now()
        booking = self._load(booking_id)
        if booking.get('user_id') != _user_id(requester) and not _is_admin(requester):
            raise ForbiddenError('Bạn không có quyền hủy đặt phòng này')
        if booking.get('status') not in Config.ACTIVE_BOOKING_STATUSES:
            raise InvalidStateError('Không thể hủy đặt phòng ở trạng thái hiện tại')
        if booking['check_in'] - now <= datetime.timedelta(hours=Config.CANCELLATION_LOCKOUT_HOURS):
            raise CancellationWindowError(
                f'Không thể hủy đặt phòng trong vòng {Config.CANCELLATION_LOCKOUT_HOURS} giờ trước khi nhận phòng'
            )

        paid = self.ledger.find_latest(booking_id, (COMPLETED, REFUND_FAILED, REFUNDING))
        if paid is not None or booking.get('payment_status') == 'paid':
            return self._refund(booking, now)

        self.ledger.supersede(booking_id, now)
        cancelled = mark_booking_cancelled(
            self.db, booking_id, REASON_USER, now, unpaid_only=True,
        )
        if cancelled is None:
            # paid while we were cancelling
            current = self._load(booking_id)
            if current.get('status') in Config.ACTIVE_BOOKING_STATUSES and current.get('payment_status') == 'paid':
                logger.info("[BOOKING] %s was paid during cancellation, refunding", booking_id)
                return self._refund(current, now)
            raise InvalidStateError('Không thể hủy đặt phòng ở trạng thái hiện tại')
        logger.info("[BOOKING] Cancelled unpaid booking %s", booking_id)
        self._notify_cancelled(cancelled, f"Đặt phòng {booking_id} đã được hủy theo yêu cầu.")
        return {'booking': cancelled, 'refund_status': None}

    def _refund(self, booking, now):
        paid = self.ledger.find_latest(booking['_id'], (COMPLETED, REFUND_FAILED, REFUNDING))
        if paid is not None and paid.get('status') == REFUNDING:
            return {'booking': booking, 'refund_status': 'processing'}
        method = (paid or {}).get('payment_method') or booking.get('payment_method')
        result = self.gateway_for(method).refund_payment(booking, now)
        if result is False:
            raise RefundError('Hoàn tiền thất bại, vui lòng thử lại sau')
        return {
            'booking': self.db.bookings.find_one({'_id': booking['_id']}),
            'refund_status': 'processing' if result == 'processing' else 'refunded',
        }

    @best_effort
    def _notify_cancelled(self, booking, message, reason=None):
        metadata = {'booking_id': booking['_id']}
        if reason:
            metadata['reason'] = reason
        self.notifier.notify(booking['user_id'], 'Đặt phòng đã bị hủy', message, 'booking', metadata)

    def expire_booking(self, booking, now=None):
        """Cancel an unpaid pending booking whose payment window ran out.

        The gateway is asked first: a booking that was in fact paid is
        confirmed instead. Returns the cancelled booking or None.
        """
        now = now or utc_now()
        booking_id = booking['_id']
        pending = self.ledger.find_pending(booking_id)
        if pending is not None and pending.get('payment_method') in self.gateways:
            gateway = self.gateways[pending['payment_method']]
            try:
                result, outcome = gateway.sync_payment(pending['transaction_id'], now)
            except GatewayError as exc:
                logger.warning("[BOOKING] Could not verify %s before expiry: %s", pending['transaction_id'], exc)
                return None
            if result['status'] == 'success' or result['status'] == 'processing':
                logger.info("[BOOKING] %s still has a live payment (%s), not expiring", booking_id, outcome)
                return None

        self.ledger.supersede(booking_id, now)
        cancelled = mark_booking_cancelled(
            self.db, booking_id, REASON_TIMEOUT, now, from_statuses=(Config.STATUS_PENDING,), unpaid_only=True,
        )
        if cancelled is None:
            return None
        logger.info("[BOOKING] Auto-cancelled %s (payment timeout)", booking_id)
        self._notify_cancelled(cancelled, f"Đặt phòng {booking_id} đã bị hủy do quá hạn thanh toán.", REASON_TIMEOUT)
        return cancelled

    def find_expired_bookings(self, now=None):
        now = now or utc_now()
        cutoff = now - datetime.timedelta(hours=Config.PAYMENT_WINDOW_HOURS)
        return list(self.db.bookings.find({
            'status': Config.STATUS_PENDING,
            'payment_status': {'$ne': 'paid'},
            '$or': [
                {'last_retry_at': {'$lt': cutoff}},
                {'last_retry_at': None, 'created_at': {'$lt': cutoff}},
            ],
        }))

    # ---------------------------
    # Administrative status changes
    # ---------------------------

    def update_booking_status(self, requester, booking_id, new_status, now=None):
        now = now or utc_now()
        if not _is_privileged(requester):
            raise ForbiddenError('Yêu cầu quyền admin hoặc đối tác')
        if new_status not in Config.BOOKING_STATUSES:
            raise ValidationError('Trạng thái không hợp lệ')
        booking = self._load(booking_id)

        fields = {'status': new_status, 'updated_at': now}
        if new_status == Config.STATUS_CANCELLED and booking.get('status') != Config.STATUS_CANCELLED:
            fields['cancelled_at'] = now
            fields['cancellation_reason'] = REASON_ADMIN
        self.db.bookings.update_one({'_id': booking_id}, {'$set': fields})

        if new_status in (Config.STATUS_CANCELLED, Config.STATUS_COMPLETED):
            if new_status == Config.STATUS_CANCELLED:
                self.ledger.supersede(booking_id, now)
                release_booking_holds(self.db, booking, now)
            else:
                release_room_nights(self.db, booking_id)
            self.db.rooms.update_one(
                {'_id': booking['room_id']},
                {'$set': {'status': 'available', 'updated_at': now}},
            )
        elif booking.get('status') not in Config.ACTIVE_BOOKING_STATUSES:
            # reopened by an operator; take the nights back if still free
            try:
                claim_room_nights(self.db, booking['room_id'], booking_id, booking['check_in'], booking['check_out'], now)
            except RoomUnavailableError:
                logger.warning("[BOOKING] Reopened %s but its nights are taken", booking_id)

        logger.info("[BOOKING] %s status %s -> %s by %s", booking_id, booking.get('status'), new_status,
                    _user_id(requester))
        return self.db.bookings.find_one({'_id': booking_id})

    # ---------------------------
    # Reads
    # ---------------------------

    def get_booking(self, requester, booking_id):
        booking = self._load(booking_id)
        if booking.get('user_id') != _user_id(requester) and not _is_privileged(requester):
            raise ForbiddenError('Bạn không có quyền xem đặt phòng này')
        return booking

    def list_user_bookings(self, user, status=None):
        query = {'user_id': _user_id(user)}
        if status:
            query['status'] = status
        return list(self.db.bookings.find(query).sort('created_at', DESCENDING))

    def list_hotel_bookings(self, requester, hotel_id, status=None, page=1, limit=10):
        """Bookings of one hotel, for an admin or the partner who owns it."""
        if not _is_privileged(requester):
            raise ForbiddenError('Không có quyền truy cập danh sách đặt phòng của khách sạn')
        hotel = self.db.hotels.find_one({'_id': hotel_id})
        if hotel is None:
            raise NotFoundError('Không tìm thấy khách sạn')
        if not _is_admin(requester) and str(hotel.get('owner_id') or '') != _user_id(requester):
            raise ForbiddenError('Bạn không có quyền xem đặt phòng của khách sạn này')

        query = {'hotel_id': hotel_id}
        if status:
            query['status'] = status
        return self._page(query, page, limit)

    def list_all_bookings(self, requester, filters=None, page=1, limit=20):
        """Admin view over every booking; filters are exact-match fields."""
        if not _is_admin(requester):
            raise ForbiddenError('Chỉ admin mới có quyền truy cập tất cả đặt phòng')
        query = {k: v for k, v in (filters or {}).items() if k in LISTING_FILTERS and v}
        return self._page(query, page, limit)

    def _page(self, query, page, limit):
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 1), 1), MAX_PAGE_SIZE)
        total = self.db.bookings.count_documents(query)
        bookings = list(
            self.db.bookings.find(query).sort('created_at', DESCENDING).skip((page - 1) * limit).limit(limit)
        )
        return {'bookings': bookings, 'total': total, 'page': page, 'pages': -(-total // limit)}


def payment_window_expired(booking, now):
    started = booking.get('last_retry_at') or booking['created_at']
    return now - started > datetime.timedelta(hours=Config.PAYMENT_WINDOW_HOURS)
