"""
Pytest configuration and shared fixtures
"""
import datetime

import jwt
import mongomock
import pytest

from booking_service.app import create_app
from booking_service.bookings import BookingManager
from booking_service.config import Config
from booking_service.gateway import build_gateways
from booking_service.ledger import PaymentLedger
from booking_service.model import Database

# 10:00 local time on 1 June 2025
NOW = datetime.datetime(2025, 6, 1, 3, 0)


class FakeNotifier:
    """Records what would have been sent to notification-service"""

    def __init__(self):
        self.notifications = []
        self.emails = []

    def notify(self, user_id, title, message, notification_type='booking', metadata=None):
        self.notifications.append({
            'user_id': user_id, 'title': title, 'message': message,
            'type': notification_type, 'metadata': metadata or {},
        })
        return True

    def send_email(self, to, subject, html):
        self.emails.append({'to': to, 'subject': subject, 'html': html})
        return True


class BrokenNotifier:
    """notification-service blowing up on every call"""

    def notify(self, *args, **kwargs):
        raise RuntimeError('notification-service down')

    def send_email(self, *args, **kwargs):
        raise RuntimeError('notification-service down')


@pytest.fixture
def db():
    database = Database(mongomock.MongoClient()['booking_test'])
    database.init_indexes(partial_indexes=False)
    return database


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def ledger(db):
    return PaymentLedger(db)


@pytest.fixture
def gateways(db, ledger, notifier):
    return build_gateways(db, ledger, notifier)


@pytest.fixture
def manager(db, gateways, notifier, ledger):
    return BookingManager(db, gateways, notifier, ledger)


@pytest.fixture
def app(db, notifier, gateways):
    flask_app = create_app(db=db, notifier=notifier, gateways=gateways)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


# ============== Users ==============

GUEST = {'user_id': 'U001', 'role': 'user', 'email': 'guest@example.com'}
OTHER_GUEST = {'user_id': 'U002', 'role': 'user', 'email': 'other@example.com'}
ADMIN = {'user_id': 'A001', 'role': 'admin'}
PARTNER = {'user_id': 'P001', 'role': 'partner'}


def make_token(user):
    return jwt.encode(dict(user), Config.JWT_SECRET, algorithm='HS256')


def auth_header(user):
    return {'Authorization': f'Bearer {make_token(user)}'}


# ============== Data builders ==============

def _room(db, room_id='R101', price=500000, status='available', hotel_id='H1'):
    room = {'_id': room_id, 'hotel_id': hotel_id, 'name': f'Phòng {room_id}', 'price': price, 'status': status}
    db.rooms.insert_one(room)
    if db.hotels.find_one({'_id': hotel_id}) is None:
        db.hotels.insert_one({'_id': hotel_id, 'name': 'Sunrise Hotel'})
    return room


def _voucher(db, voucher_id='VCH001', **overrides):
    voucher = {
        '_id': voucher_id,
        'code': voucher_id,
        'discount_type': 'fixed',
        'discount': 100000,
        'max_discount': None,
        'min_order_value': 0,
        'usage_limit': None,
        'usage_count': 0,
        'start_date': None,
        'expiry_date': None,
        'status': 'active',
    }
    voucher.update(overrides)
    db.vouchers.insert_one(voucher)
    return voucher


def _booking_data(room_id='R101', check_in='2025-06-10', check_out='2025-06-12', **overrides):
    data = {
        'room_id': room_id,
        'check_in': check_in,
        'check_out': check_out,
        'payment_method': 'vnpay',
        'booking_for': 'self',
        'contact_info': {'name': 'Nguyễn Văn A', 'email': 'guest@example.com', 'phone': '0901234567'},
    }
    data.update(overrides)
    return data


def _booking(db, booking_id='BOOKTEST1', room_id='R101', user_id='U001', status='pending',
             payment_status='unpaid', check_in=None, check_out=None, created_at=None, **overrides):
    check_in = check_in or datetime.datetime(2025, 6, 10, 7, 0)
    check_out = check_out or datetime.datetime(2025, 6, 12, 5, 0)
    booking = {
        '_id': booking_id,
        'user_id': user_id,
        'room_id': room_id,
        'hotel_id': 'H1',
        'check_in': check_in,
        'check_out': check_out,
        'nights': 2,
        'voucher_id': None,
        'original_price': 1000000.0,
        'discount_amount': 0.0,
        'final_price': 1000000.0,
        'status': status,
        'payment_status': payment_status,
        'payment_method': 'vnpay',
        'booking_for': 'self',
        'contact_info': {'name': 'Nguyễn Văn A', 'email': 'guest@example.com', 'phone': '0901234567'},
        'guest_info': None,
        'special_requests': {},
        'payment_id': None,
        'retry_count': 0,
        'last_retry_at': None,
        'created_at': created_at or NOW,
        'updated_at': created_at or NOW,
    }
    booking.update(overrides)
    db.bookings.insert_one(booking)
    return booking


def _payment(db, booking, transaction_id='TXN001', status='completed', method='vnpay', amount=None, **overrides):
    payment = {
        '_id': f'PAY{transaction_id}',
        'booking_id': booking['_id'],
        'user_id': booking['user_id'],
        'amount': int(booking['final_price'] if amount is None else amount),
        'currency': 'VND',
        'payment_method': method,
        'transaction_id': transaction_id,
        'status': status,
        'gateway_txn_id': None,
        'created_at': NOW,
        'updated_at': NOW,
    }
    payment.update(overrides)
    db.payments.insert_one(payment)
    return payment
