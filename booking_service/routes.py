"""
Booking Routes - Flask Blueprint for booking and availability endpoints
"""
from flask import Blueprint, current_app, jsonify, request

from .availability import get_booked_room_ids, is_room_available
from .decorators import admin_required, privileged_required, token_required
from .errors import NotFoundError, ValidationError
from .utils import format_booking_response, format_payment_response, normalize_check_in, normalize_check_out


booking_bp = Blueprint('bookings', __name__)


def _manager():
    return current_app.extensions['booking_manager']


def _get_client_ip():
    return (
        request.headers.get('X-Forwarded-For', '').split(',')[0].strip()
        or request.remote_addr
        or '127.0.0.1'
    )


@booking_bp.route('/api/bookings', methods=['POST'])
@token_required
def create_booking(current_user):
    data = request.get_json(silent=True) or {}
    missing = [f for f in ('room_id', 'check_in', 'check_out') if not data.get(f)]
    if missing:
        raise ValidationError(f"Thiếu trường: {', '.join(missing)}")

    result = _manager().create_booking(current_user, data, _get_client_ip())
    return jsonify({
        'success': True,
        'message': 'Đặt phòng thành công! Vui lòng hoàn tất thanh toán.',
        'booking': format_booking_response(result['booking']),
        'paymentUrl': result['payment_url'],
        'transactionId': result['transaction_id'],
    }), 201


@booking_bp.route('/api/bookings/my', methods=['GET'])
@token_required
def my_bookings(current_user):
    bookings = _manager().list_user_bookings(current_user, request.args.get('status'))
    return jsonify({
        'success': True,
        'bookings': [format_booking_response(b) for b in bookings],
        'total': len(bookings),
    })


def _paging(default_limit):
    try:
        return int(request.args.get('page', 1)), int(request.args.get('limit', default_limit))
    except ValueError:
        raise ValidationError('Tham số phân trang không hợp lệ')


def _listing_response(result):
    return jsonify({
        'success': True,
        'bookings': [format_booking_response(b) for b in result['bookings']],
        'total': result['total'],
        'page': result['page'],
        'pages': result['pages'],
    })


@booking_bp.route('/api/bookings', methods=['GET'])
@token_required
@admin_required
def all_bookings(current_user):
    page, limit = _paging(20)
    result = _manager().list_all_bookings(current_user, request.args.to_dict(), page, limit)
    return _listing_response(result)


@booking_bp.route('/api/bookings/hotel/<hotel_id>', methods=['GET'])
@token_required
@privileged_required
def hotel_bookings(current_user, hotel_id):
    page, limit = _paging(10)
    result = _manager().list_hotel_bookings(current_user, hotel_id, request.args.get('status'), page, limit)
    return _listing_response(result)


@booking_bp.route('/api/bookings/<booking_id>', methods=['GET'])
@token_required
def get_booking(current_user, booking_id):
    manager = _manager()
    booking = manager.get_booking(current_user, booking_id)
    payments = manager.ledger.list_for_booking(booking_id)
    return jsonify({
        'success': True,
        'booking': format_booking_response(booking),
        'payments': [format_payment_response(p) for p in payments],
    })


@booking_bp.route('/api/bookings/retry-payment', methods=['POST'])
@token_required
def retry_payment(current_user):
    data = request.get_json(silent=True) or {}
    booking_id = data.get('booking_id') or data.get('bookingId')
    if not booking_id:
        raise ValidationError('Thiếu booking_id')

    result = _manager().retry_payment(current_user, booking_id, data.get('payment_method'), _get_client_ip())
    return jsonify({
        'success': True,
        'message': 'Đã tạo liên kết thanh toán mới',
        'booking': format_booking_response(result['booking']),
        'paymentUrl': result['payment_url'],
        'transactionId': result['transaction_id'],
    })


@booking_bp.route('/api/bookings/<booking_id>/cancel', methods=['PUT'])
@token_required
def cancel_booking(current_user, booking_id):
    result = _manager().cancel_booking(current_user, booking_id)
    if result['refund_status'] == 'processing':
        message = 'Yêu cầu hoàn tiền đang được xử lý'
    elif result['refund_status'] == 'refunded':
        message = 'Đã hủy đặt phòng và hoàn tiền thành công'
    else:
        message = 'Đã hủy đặt phòng'
    return jsonify({
        'success': True,
        'message': message,
        'refundStatus': result['refund_status'],
        'booking': format_booking_response(result['booking']),
    })


@booking_bp.route('/api/bookings/<booking_id>/status', methods=['PUT'])
@token_required
@privileged_required
def update_status(current_user, booking_id):
    data = request.get_json(silent=True) or {}
    booking = _manager().update_booking_status(current_user, booking_id, data.get('status'))
    return jsonify({
        'success': True,
        'message': 'Cập nhật trạng thái thành công',
        'booking': format_booking_response(booking),
    })


@booking_bp.route('/api/rooms/availability', methods=['GET'])
def room_availability():
    """Booked room ids for a stay, or a yes/no for one room when room_id is given."""
    raw_check_in = request.args.get('check_in')
    raw_check_out = request.args.get('check_out')
    if not raw_check_in or not raw_check_out:
        raise ValidationError('Thiếu check_in hoặc check_out')
    try:
        check_in = normalize_check_in(raw_check_in)
        check_out = normalize_check_out(raw_check_out)
    except ValueError:
        raise ValidationError('Ngày không hợp lệ')
    if check_out <= check_in:
        raise ValidationError('Ngày trả phòng phải sau ngày nhận phòng')

    db = _manager().db
    room_id = request.args.get('room_id')
    if room_id:
        if db.rooms.find_one({'_id': room_id}) is None:
            raise NotFoundError('Không tìm thấy phòng')
        return jsonify({
            'success': True,
            'roomId': room_id,
            'available': is_room_available(db, room_id, check_in, check_out),
        })

    booked = sorted(get_booked_room_ids(db, check_in, check_out))
    return jsonify({'success': True, 'bookedRoomIds': booked})
