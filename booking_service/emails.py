"""
Booking Service - E-mail bodies

Each builder returns (subject, html). Delivery is NotificationClient's job.
"""
from html import escape

from .utils import to_local

METHOD_LABELS = {
    'zalopay': 'ZaloPay',
    'vnpay': 'VNPay',
    'credit_card': 'Thẻ tín dụng',
    'paypal': 'PayPal',
}


def _money(amount):
    return f"{float(amount or 0):,.0f} VNĐ".replace(',', '.')


def _day(dt):
    return to_local(dt).strftime('%d/%m/%Y') if dt else ''


def _short_id(booking):
    return str(booking['_id'])[-8:]


def _special_requests(booking):
    requests_ = booking.get('special_requests') or {}
    items = []
    if requests_.get('early_check_in'):
        items.append('<li>Yêu cầu check-in sớm</li>')
    if requests_.get('late_check_out'):
        items.append('<li>Yêu cầu check-out muộn</li>')
    if requests_.get('additional_requests'):
        items.append(f"<li>Yêu cầu khác: {escape(requests_['additional_requests'])}</li>")
    if not items:
        return ''
    return '<h2>Yêu cầu đặc biệt</h2><ul>' + ''.join(items) + '</ul>'


def booking_created_email(booking, room, hotel_name, for_booker=True):
    contact = booking.get('contact_info') or {}
    guest = booking.get('guest_info') or contact
    if for_booker:
        subject = f"Xác nhận đặt phòng tại {hotel_name} - Mã: {_short_id(booking)}"
        notes = (
            '<h2>Lưu ý quan trọng:</h2><ul>'
            '<li>Vui lòng mang theo giấy tờ tùy thân khi check-in</li>'
            '<li>Check-in: 14:00 | Check-out: 12:00</li>'
            '</ul>'
        )
    else:
        subject = f"Thông báo đặt phòng tại {hotel_name} - Mã: {_short_id(booking)}"
        notes = (
            '<h2>Hướng dẫn check-in:</h2><ul>'
            f"<li>Mang theo giấy tờ tùy thân và mã đặt phòng: {booking['_id']}</li>"
            f"<li>Thời gian check-in: 14:00 ngày {_day(booking.get('check_in'))}</li>"
            f"<li>Thời gian check-out: 12:00 ngày {_day(booking.get('check_out'))}</li>"
            f"<li>Liên hệ người đặt: {escape(contact.get('name', ''))} - {escape(contact.get('phone', ''))}</li>"
            '</ul>'
        )

    html = (
        f"<h1>{'Xác nhận đặt phòng' if for_booker else 'Bạn có một đặt phòng mới'}</h1>"
        f"<p>Xin chào {escape((contact if for_booker else guest).get('name', ''))},</p>"
        f"<p><strong>Khách sạn:</strong> {escape(hotel_name)}</p>"
        f"<p><strong>Phòng:</strong> {escape(str(room.get('name') or room.get('room_type') or room['_id']))}</p>"
        f"<p><strong>Nhận phòng:</strong> {_day(booking.get('check_in'))} 14:00</p>"
        f"<p><strong>Trả phòng:</strong> {_day(booking.get('check_out'))} 12:00</p>"
        f"<p><strong>Số đêm:</strong> {booking.get('nights', 0)}</p>"
        f"<p><strong>Giá gốc:</strong> {_money(booking.get('original_price'))}</p>"
        f"<p><strong>Giảm giá:</strong> {_money(booking.get('discount_amount'))}</p>"
        f"<p><strong>Tổng thanh toán:</strong> {_money(booking.get('final_price'))}</p>"
        f"{_special_requests(booking)}"
        '<p><strong>Trạng thái:</strong> Chờ xác nhận</p>'
        f"<p><strong>Mã đặt phòng:</strong> {booking['_id']}</p>"
        f"{notes}"
        '<p>Cảm ơn bạn đã chọn dịch vụ của chúng tôi!</p>'
    )
    return subject, html


def invoice_email(booking, payment):
    contact = booking.get('contact_info') or {}
    guest_name = (booking.get('guest_info') or {}).get('name') if booking.get('booking_for') == 'other' else None
    method = METHOD_LABELS.get(payment.get('payment_method'), payment.get('payment_method', ''))
    subject = f"Hóa đơn thanh toán - Mã đặt phòng: {_short_id(booking)}"
    html = (
        '<html lang="vi"><head><meta charset="UTF-8"></head><body>'
        '<div class="invoice-container">'
        '<div class="header"><h1>HÓA ĐƠN ĐẶT PHÒNG</h1></div>'
        f"<p><strong>Mã đặt phòng:</strong> {booking['_id']}</p>"
        f"<p><strong>Mã giao dịch:</strong> {escape(str(payment.get('transaction_id', '')))}</p>"
        f"<p><strong>Khách hàng:</strong> {escape(contact.get('name', ''))}</p>"
        f"<p><strong>Người lưu trú:</strong> {escape(guest_name or contact.get('name', ''))}</p>"
        '<table>'
        f"<tr><td>Nhận phòng</td><td>{_day(booking.get('check_in'))}</td></tr>"
        f"<tr><td>Trả phòng</td><td>{_day(booking.get('check_out'))}</td></tr>"
        f"<tr><td>Số đêm</td><td>{booking.get('nights', 0)}</td></tr>"
        f"<tr><td>Giá gốc</td><td>{_money(booking.get('original_price'))}</td></tr>"
        f"<tr><td>Giảm giá</td><td>{_money(booking.get('discount_amount'))}</td></tr>"
        f"<tr><td>Đã thanh toán</td><td>{_money(payment.get('amount'))}</td></tr>"
        f"<tr><td>Phương thức</td><td>{escape(method)}</td></tr>"
        '</table>'
        '<p>Cảm ơn bạn đã sử dụng dịch vụ!</p>'
        '</div></body></html>'
    )
    return subject, html


def refund_email(booking, payment):
    contact = booking.get('contact_info') or {}
    subject = f"Hoàn tiền đặt phòng - Mã: {_short_id(booking)}"
    html = (
        '<h1>Xác nhận hoàn tiền</h1>'
        f"<p>Xin chào {escape(contact.get('name', ''))},</p>"
        f"<p>Đặt phòng <strong>{booking['_id']}</strong> đã được hủy.</p>"
        f"<p><strong>Số tiền hoàn:</strong> {_money(payment.get('refund_amount'))}</p>"
        f"<p><strong>Mã hoàn tiền:</strong> {escape(str(payment.get('refund_transaction_id') or ''))}</p>"
        '<p>Tiền sẽ được hoàn về tài khoản thanh toán của bạn trong vài ngày làm việc.</p>'
    )
    return subject, html


def retry_payment_email(booking, pay_url):
    contact = booking.get('contact_info') or {}
    subject = 'Thông báo thử thanh toán lại'
    html = (
        f"<p>Xin chào {escape(contact.get('name', ''))},</p>"
        f"<p>Bạn đã yêu cầu thanh toán lại cho đặt phòng {booking['_id']} "
        f"(lần {booking.get('retry_count', 0)}).</p>"
        f"<p><a href=\"{escape(pay_url)}\">Thanh toán ngay</a></p>"
        '<p>Đặt phòng sẽ tự động hủy nếu không được thanh toán trong 24 giờ.</p>'
    )
    return subject, html
