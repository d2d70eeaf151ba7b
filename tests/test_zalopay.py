"""
ZaloPay adapter: order creation, callback envelope, redirect checksum, refunds
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from booking_service.config import Config
from booking_service.errors import GatewayError
from booking_service.zalopay import hmac_sha256, order_mac, redirect_checksum, unwrap_callback
from conftest import GUEST, NOW, _booking, _booking_data, _payment, _room

KEY1 = Config.ZALOPAY_KEY1
KEY2 = Config.ZALOPAY_KEY2


def _response(data):
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = data
    return resp


def _callback(transaction_id, booking_id, amount=1000000, status=1, key=KEY2):
    data = json.dumps({
        'app_id': int(Config.ZALOPAY_APP_ID),
        'app_trans_id': transaction_id,
        'amount': amount,
        'embed_data': json.dumps({'bookingId': booking_id}),
        'zp_trans_id': 250601000000123,
        'trans_status': status,
    })
    return {'data': data, 'mac': hmac_sha256(key, data), 'type': 1}


def _redirect(transaction_id, amount=1000000, status='1'):
    query = {
        'appid': Config.ZALOPAY_APP_ID,
        'apptransid': transaction_id,
        'pmcid': '38',
        'bankcode': '',
        'amount': str(amount),
        'discountamount': '0',
        'status': status,
    }
    query['checksum'] = redirect_checksum(KEY2, query)
    return query


@pytest.fixture
def zalopay(gateways):
    return gateways['zalopay']


@pytest.fixture
def created(db, manager):
    _room(db)
    reply = {'return_code': 1, 'order_url': 'https://qcgateway.zalopay.vn/openinapp?order=abc', 'zp_trans_token': 'tok'}
    with patch('booking_service.zalopay.requests.post', return_value=_response(reply)) as post:
        result = manager.create_booking(GUEST, _booking_data(payment_method='zalopay'), now=NOW)
    result['create_form'] = post.call_args.kwargs['data']
    return result


# ============== Create order ==============

def test_create_order_is_signed_with_key1(created):
    form = created['create_form']
    assert form['mac'] == order_mac(KEY1, form)
    assert form['amount'] == 1000000
    assert form['app_trans_id'] == created['transaction_id']
    assert form['app_trans_id'].startswith('250601_')
    assert json.loads(form['embed_data'])['bookingId'] == created['booking']['_id']
    assert created['payment_url'] == 'https://qcgateway.zalopay.vn/openinapp?order=abc'


def test_create_order_rejected(db, manager):
    _room(db)
    reply = {'return_code': 2, 'return_message': 'Giao dịch thất bại'}
    with patch('booking_service.zalopay.requests.post', return_value=_response(reply)):
        with pytest.raises(GatewayError):
            manager.create_booking(GUEST, _booking_data(payment_method='zalopay'), now=NOW)


# ============== Callback ==============

class TestCallback:

    def test_success(self, db, zalopay, created):
        body = zalopay.handle_callback(_callback(created['transaction_id'], created['booking']['_id']), NOW)

        assert body == {'return_code': 1, 'return_message': 'Success'}
        assert db.bookings.find_one({'_id': created['booking']['_id']})['status'] == 'confirmed'
        payment = db.payments.find_one({'transaction_id': created['transaction_id']})
        assert payment['gateway_txn_id'] == 250601000000123

    def test_duplicate_is_acknowledged_once(self, zalopay, created, notifier):
        body = _callback(created['transaction_id'], created['booking']['_id'])
        zalopay.handle_callback(body, NOW)
        sent = len(notifier.notifications)

        assert zalopay.handle_callback(body, NOW)['return_code'] == 2
        assert len(notifier.notifications) == sent

    def test_wrong_key_is_rejected(self, db, zalopay, created):
        body = _callback(created['transaction_id'], created['booking']['_id'], key='not-key2')
        assert zalopay.handle_callback(body, NOW) == {'return_code': -1, 'return_message': 'Invalid data signature'}
        assert db.bookings.find_one({'_id': created['booking']['_id']})['status'] == 'pending'

    def test_amount_mismatch(self, zalopay, created):
        body = _callback(created['transaction_id'], created['booking']['_id'], amount=1)
        assert zalopay.handle_callback(body, NOW)['return_code'] == -1

    def test_booking_mismatch(self, zalopay, created):
        body = _callback(created['transaction_id'], 'OTHERBOOKING')
        assert zalopay.handle_callback(body, NOW)['return_message'] == 'Payment not found'

    def test_failed_status(self, db, zalopay, created):
        body = _callback(created['transaction_id'], created['booking']['_id'], status=2)
        assert zalopay.handle_callback(body, NOW)['return_code'] == 1
        assert db.payments.find_one({'transaction_id': created['transaction_id']})['status'] == 'failed'

    def test_empty_body(self, zalopay):
        assert zalopay.handle_callback({}, NOW)['return_code'] == -1


def test_unwrapped_payload_signed_over_sorted_pairs():
    payload = {'app_trans_id': 'T1', 'amount': '1000', 'app_id': '2553'}
    signed = '&'.join(f"{k}={payload[k]}" for k in sorted(payload))
    assert unwrap_callback(KEY2, {**payload, 'mac': hmac_sha256(KEY2, signed)}) == payload


# ============== Redirect ==============

class TestRedirect:

    def test_bad_checksum_goes_to_failure_page(self, db, zalopay, created):
        query = _redirect(created['transaction_id'])
        query['amount'] = '1'
        assert zalopay.handle_redirect(query, NOW) == f"{Config.CLIENT_URL}/payment-failed?reason=invalid-checksum"
        assert db.bookings.find_one({'_id': created['booking']['_id']})['status'] == 'pending'

    def test_success_is_verified_before_confirming(self, db, zalopay, created):
        answer = {'return_code': 1, 'amount': 1000000, 'zp_trans_id': 250601000000123}
        with patch('booking_service.zalopay.requests.post', return_value=_response(answer)) as post:
            url = zalopay.handle_redirect(_redirect(created['transaction_id']), NOW)

        assert url == f"{Config.CLIENT_URL}/booking-success/{created['booking']['_id']}"
        assert post.call_args.args[0].endswith('/query')
        assert db.bookings.find_one({'_id': created['booking']['_id']})['status'] == 'confirmed'

    def test_unverified_success_is_not_trusted(self, db, zalopay, created):
        with patch('booking_service.zalopay.requests.post', return_value=_response({'return_code': 3})):
            url = zalopay.handle_redirect(_redirect(created['transaction_id']), NOW)
        assert 'verification-failed' in url
        assert db.bookings.find_one({'_id': created['booking']['_id']})['status'] == 'pending'

    def test_already_paid_skips_query(self, zalopay, created):
        zalopay.handle_callback(_callback(created['transaction_id'], created['booking']['_id']), NOW)
        with patch('booking_service.zalopay.requests.post') as post:
            url = zalopay.handle_redirect(_redirect(created['transaction_id']), NOW)
        post.assert_not_called()
        assert '/booking-success/' in url

    def test_cancelled_by_user(self, db, zalopay, created):
        url = zalopay.handle_redirect(_redirect(created['transaction_id'], status='-49'), NOW)
        assert url == f"{Config.CLIENT_URL}/payment-failed"
        assert db.payments.find_one({'transaction_id': created['transaction_id']})['status'] == 'failed'

    def test_failure_redirect_after_paid_callback_goes_to_success_page(self, db, zalopay, created):
        zalopay.handle_callback(_callback(created['transaction_id'], created['booking']['_id']), NOW)

        url = zalopay.handle_redirect(_redirect(created['transaction_id'], status='-49'), NOW)

        assert url == f"{Config.CLIENT_URL}/booking-success/{created['booking']['_id']}"
        assert db.payments.find_one({'transaction_id': created['transaction_id']})['status'] == 'completed'

    def test_gateway_outage_goes_to_error_page(self, zalopay, created):
        with patch('booking_service.zalopay.requests.post', side_effect=requests.Timeout()):
            url = zalopay.handle_redirect(_redirect(created['transaction_id']), NOW)
        assert url == f"{Config.CLIENT_URL}/payment-error"


# ============== Refund ==============

class TestRefund:

    @pytest.fixture
    def paid(self, db):
        booking = _booking(db, status='confirmed', payment_status='paid', payment_method='zalopay')
        _payment(db, booking, transaction_id='250601_1234560001', method='zalopay', gateway_txn_id='250601000000123')
        return booking

    def test_refund_request_is_signed(self, db, zalopay, paid):
        with patch('booking_service.zalopay.requests.post', return_value=_response({'return_code': 1, 'refund_id': 99})) as post:
            assert zalopay.refund_payment(db.bookings.find_one({'_id': paid['_id']}), NOW) is True

        form = post.call_args.kwargs['data']
        expected = hmac_sha256(KEY1, '|'.join(str(form[k]) for k in (
            'app_id', 'zp_trans_id', 'amount', 'description', 'timestamp')))
        assert form['mac'] == expected
        assert form['m_refund_id'].startswith(f"250601_{Config.ZALOPAY_APP_ID}_")
        payment = db.payments.find_one({'transaction_id': '250601_1234560001'})
        assert payment['status'] == 'refunded'
        assert payment['gateway_refund_id'] == '99'

    def test_refund_processing_then_settled(self, db, zalopay, paid):
        with patch('booking_service.zalopay.requests.post', return_value=_response({'return_code': 3})), \
                patch.object(zalopay, 'schedule_refund_recheck'):
            assert zalopay.refund_payment(db.bookings.find_one({'_id': paid['_id']}), NOW) == 'processing'

        with patch('booking_service.zalopay.requests.post', return_value=_response({'return_code': 1})) as post:
            assert zalopay.check_refund_status('250601_1234560001', NOW) == 'refunded'
        assert post.call_args.args[0].endswith('/query_refund')
        assert db.bookings.find_one({'_id': paid['_id']})['status'] == 'cancelled'

    def test_refund_rejected(self, db, zalopay, paid):
        reply = {'return_code': 2, 'return_message': 'Giao dịch không hợp lệ'}
        with patch('booking_service.zalopay.requests.post', return_value=_response(reply)):
            assert zalopay.refund_payment(db.bookings.find_one({'_id': paid['_id']}), NOW) is False
        assert db.payments.find_one({'transaction_id': '250601_1234560001'})['status'] == 'refund_failed'
