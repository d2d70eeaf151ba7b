"""
ZaloPay adapter (open API v2).

Requests are signed with key1, callbacks and browser redirects with key2,
both HMAC-SHA256 over pipe-joined fields.
"""
import datetime
import hashlib
import hmac
import json
import logging
import random
import urllib.parse

import requests

from .config import Config
from .errors import GatewayError
from .gateway import (
    ALREADY_CONFIRMED, AMOUNT_MISMATCH, CONFIRMED, FAILED, GW_FAILED, GW_PROCESSING, GW_SUCCESS,
    IGNORED, PaymentGateway,
)
from .ledger import PAID_STATUSES
from .utils import utc_now

logger = logging.getLogger(__name__)

GMT7 = datetime.timedelta(hours=7)
EPOCH = datetime.datetime(1970, 1, 1)

CALLBACK_REQUIRED_FIELDS = ('app_id', 'app_trans_id', 'amount', 'embed_data')

# return_code values shared by /query, /refund and /query_refund
RC_SUCCESS = 1
RC_FAILED = 2
RC_PROCESSING = 3


def hmac_sha256(key, data):
    return hmac.new(key.encode('utf-8'), data.encode('utf-8'), hashlib.sha256).hexdigest()


def _millis(now):
    return int((now - EPOCH).total_seconds() * 1000)


def _yymmdd(now):
    return (now + GMT7).strftime('%y%m%d')


def order_mac(key1, order):
    data = '|'.join(str(order[k]) for k in (
        'app_id', 'app_trans_id', 'app_user', 'amount', 'app_time', 'embed_data', 'item'))
    return hmac_sha256(key1, data)


def redirect_checksum(key2, query):
    data = '|'.join(str(query.get(k, '')) for k in (
        'appid', 'apptransid', 'pmcid', 'bankcode', 'amount', 'discountamount', 'status'))
    return hmac_sha256(key2, data)


def verify_redirect(key2, query):
    checksum = query.get('checksum')
    if not checksum:
        return False
    return hmac.compare_digest(redirect_checksum(key2, query), checksum.lower())


def unwrap_callback(key2, body):
    """Verify a callback body and return the inner payload dict.

    Raises ValueError with the message to send back to ZaloPay.
    """
    if not body:
        raise ValueError('Empty data received')

    if 'data' in body and 'mac' in body:
        if not hmac.compare_digest(hmac_sha256(key2, str(body['data'])), str(body['mac'])):
            raise ValueError('Invalid data signature')
        try:
            data = json.loads(body['data'])
        except (TypeError, ValueError):
            raise ValueError('Invalid data format')
        if not isinstance(data, dict):
            raise ValueError('Invalid data format')
        return data

    # unwrapped payload: mac over the sorted key=value pairs
    data = dict(body)
    mac = str(data.pop('mac', '') or '')
    signed = '&'.join(f"{k}={data[k]}" for k in sorted(data))
    if not mac or not hmac.compare_digest(hmac_sha256(key2, signed), mac):
        raise ValueError('Invalid data signature')
    return data


class ZaloPayGateway(PaymentGateway):
    method = 'zalopay'
    tag = '[ZALOPAY]'

    def __init__(self, db, ledger, notifier, job_scheduler=None, timeout=None):
        super().__init__(db, ledger, notifier, job_scheduler, timeout)
        self.app_id = Config.ZALOPAY_APP_ID
        self.key1 = Config.ZALOPAY_KEY1
        self.key2 = Config.ZALOPAY_KEY2
        self.endpoint = Config.ZALOPAY_ENDPOINT
        self.callback_url = Config.ZALOPAY_CALLBACK_URL
        self.redirect_url = Config.ZALOPAY_REDIRECT_URL

    def new_transaction_id(self, booking, now):
        return f"{_yymmdd(now)}_{random.randint(0, 999999):06d}{_millis(now) % 10000:04d}"

    def _post(self, path, form):
        try:
            resp = requests.post(f"{self.endpoint}/{path}", data=form, timeout=self.timeout)
        except requests.RequestException as exc:
            raise GatewayError(f"ZaloPay {path} request failed: {exc}")
        try:
            data = resp.json()
        except ValueError:
            raise GatewayError(f"ZaloPay {path} returned invalid JSON (HTTP {resp.status_code})")
        if not isinstance(data, dict):
            raise GatewayError(f"ZaloPay {path} returned unexpected payload")
        return data

    # ---------------------------
    # Create order
    # ---------------------------

    def _create_order(self, booking, payment, client_ip, now):
        order = {
            'app_id': self.app_id,
            'app_trans_id': payment['transaction_id'],
            'app_user': str(booking.get('user_id') or 'guest'),
            'app_time': _millis(now),
            'amount': int(payment['amount']),
            'item': json.dumps([{
                'booking_id': booking['_id'],
                'room_id': booking.get('room_id'),
                'nights': booking.get('nights'),
            }]),
            'embed_data': json.dumps({'bookingId': booking['_id'], 'redirecturl': self.redirect_url}),
            'description': f"Thanh toan dat phong #{booking['_id']}",
            'bank_code': '',
            'callback_url': self.callback_url,
        }
        order['mac'] = order_mac(self.key1, order)

        data = self._post('create', order)
        if data.get('return_code') != RC_SUCCESS or not data.get('order_url'):
            raise GatewayError(
                f"ZaloPay create failed: {data.get('return_code')} "
                f"{data.get('sub_return_message') or data.get('return_message', '')}".strip()
            )
        return {
            'pay_url': data['order_url'],
            'zp_trans_token': data.get('zp_trans_token'),
        }

    # ---------------------------
    # Inbound: callback and browser redirect
    # ---------------------------

    def handle_callback(self, body, now=None):
        """Server-to-server callback. Returns the {return_code, return_message} ack."""
        try:
            try:
                data = unwrap_callback(self.key2, body)
            except ValueError as exc:
                logger.warning("[ZALOPAY] Rejected callback: %s", exc)
                return {'return_code': -1, 'return_message': str(exc)}

            missing = [f for f in CALLBACK_REQUIRED_FIELDS if not data.get(f)]
            if missing:
                return {'return_code': -1, 'return_message': f"Missing required fields: {', '.join(missing)}"}

            try:
                embed = data['embed_data']
                embed = json.loads(embed) if isinstance(embed, str) else embed
                booking_id = embed['bookingId']
            except (TypeError, ValueError, KeyError):
                return {'return_code': -1, 'return_message': 'Invalid embed_data format'}

            transaction_id = data['app_trans_id']
            payment = self.ledger.find_by_transaction(transaction_id)
            if payment is None or payment.get('booking_id') != booking_id:
                return {'return_code': -1, 'return_message': 'Payment not found'}

            status = str(data.get('trans_status', data.get('status', 1)))
            if status not in ('1', '2'):
                logger.info("[ZALOPAY] Unhandled transaction status %s for %s", status, transaction_id)
                return {'return_code': 1, 'return_message': 'Success'}

            outcome = self.apply_result(
                transaction_id, status == '1', data.get('zp_trans_id'), data.get('amount'), data, now,
            )
            if outcome == AMOUNT_MISMATCH:
                return {'return_code': -1, 'return_message': 'Invalid amount'}
            if outcome == ALREADY_CONFIRMED:
                return {'return_code': 2, 'return_message': 'Already processed'}
            if outcome in (CONFIRMED, FAILED, IGNORED):
                return {'return_code': 1, 'return_message': 'Success'}
            return {'return_code': -1, 'return_message': 'Payment not found'}
        except Exception as exc:
            logger.exception("[ZALOPAY] Callback processing crashed")
            return {'return_code': -1, 'return_message': f"Server error: {exc}"}

    def handle_redirect(self, query, now=None):
        """Browser return. Always yields a URL to redirect to."""
        client = Config.CLIENT_URL
        try:
            if not verify_redirect(self.key2, query):
                logger.warning("[ZALOPAY] Redirect checksum mismatch for %s", query.get('apptransid'))
                return f"{client}/payment-failed?reason=invalid-checksum"

            transaction_id = query.get('apptransid')
            payment = self.ledger.find_by_transaction(transaction_id)
            if payment is None:
                return f"{client}/payment-failed?reason=transaction-not-found"
            success_url = f"{client}/booking-success/{urllib.parse.quote(str(payment['booking_id']))}"

            if str(query.get('status')) != '1':
                outcome = self.apply_result(transaction_id, False, raw=dict(query), now=now)
                if outcome == ALREADY_CONFIRMED:
                    return success_url
                return f"{client}/payment-failed"

            if payment.get('status') in PAID_STATUSES:
                return success_url

            # the redirect says paid; ask ZaloPay before trusting it
            result = self.verify_payment_status(transaction_id)
            if result['status'] != GW_SUCCESS:
                return f"{client}/payment-failed?reason=verification-failed"
            outcome = self.apply_result(
                transaction_id, True, result.get('gateway_txn_id'), result.get('amount'), result.get('raw'), now,
            )
            if outcome in (CONFIRMED, ALREADY_CONFIRMED):
                return success_url
            return f"{client}/payment-failed?reason={outcome}"
        except Exception:
            logger.exception("[ZALOPAY] Redirect processing crashed")
            return f"{client}/payment-error"

    # ---------------------------
    # Outbound: query and refund
    # ---------------------------

    def _query_payment(self, payment):
        transaction_id = payment['transaction_id']
        form = {
            'app_id': self.app_id,
            'app_trans_id': transaction_id,
            'mac': hmac_sha256(self.key1, f"{self.app_id}|{transaction_id}|{self.key1}"),
        }
        data = self._post('query', form)
        code = data.get('return_code')
        if code == RC_SUCCESS:
            status = GW_SUCCESS
        elif code == RC_PROCESSING or data.get('is_processing'):
            status = GW_PROCESSING
        elif code == RC_FAILED:
            status = GW_FAILED
        else:
            raise GatewayError(f"ZaloPay query error {code}: {data.get('return_message', '')}")
        return {
            'status': status,
            'gateway_txn_id': str(data['zp_trans_id']) if data.get('zp_trans_id') else None,
            'amount': data.get('amount'),
            'raw': data,
        }

    def _request_refund(self, payment, amount, now):
        zp_trans_id = payment.get('gateway_txn_id')
        if not zp_trans_id:
            # not cached locally; ask ZaloPay for it
            result = self._query_payment(payment)
            zp_trans_id = result.get('gateway_txn_id')
            if not zp_trans_id:
                raise GatewayError('Không thể lấy mã giao dịch ZaloPay')
            self.ledger.patch_missing_gateway_txn(payment['transaction_id'], zp_trans_id, now)

        timestamp = _millis(now)
        m_refund_id = f"{_yymmdd(now)}_{self.app_id}_{timestamp}{random.randint(100, 999)}"
        description = f"Hoan tien dat phong #{payment['booking_id']}"
        form = {
            'app_id': self.app_id,
            'm_refund_id': m_refund_id,
            'zp_trans_id': zp_trans_id,
            'amount': int(amount),
            'timestamp': timestamp,
            'description': description,
        }
        form['mac'] = hmac_sha256(
            self.key1, f"{self.app_id}|{zp_trans_id}|{int(amount)}|{description}|{timestamp}")

        data = self._post('refund', form)
        outcome = self._refund_outcome(data)
        outcome['refund_transaction_id'] = m_refund_id
        return outcome

    def _query_refund(self, payment):
        m_refund_id = payment.get('refund_transaction_id')
        if not m_refund_id:
            raise GatewayError('Missing m_refund_id')
        timestamp = _millis(utc_now())
        form = {
            'app_id': self.app_id,
            'm_refund_id': m_refund_id,
            'timestamp': timestamp,
            'mac': hmac_sha256(self.key1, f"{self.app_id}|{m_refund_id}|{timestamp}"),
        }
        return self._refund_outcome(self._post('query_refund', form))

    @staticmethod
    def _refund_outcome(data):
        code = data.get('return_code')
        outcome = {
            'gateway_refund_id': str(data['refund_id']) if data.get('refund_id') else None,
            'raw': data,
            'reason': None,
        }
        if code == RC_SUCCESS:
            outcome['status'] = GW_SUCCESS
        elif code == RC_PROCESSING:
            outcome['status'] = GW_PROCESSING
        else:
            outcome['status'] = GW_FAILED
            outcome['reason'] = f"{code} {data.get('sub_return_message') or data.get('return_message', '')}".strip()
        return outcome
