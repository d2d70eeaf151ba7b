"""
Payment gateway base class.

Adapters (VNPay, ZaloPay) only know how to talk to their gateway: build and
sign requests, parse and verify responses. Everything that touches local
state lives here, so both gateways share one state machine:

    pending --success--> completed --refund--> refunding --> refunded
    pending --failure--> failed                refunding --> refund_failed
    pending|failed --new attempt--> cancelled
"""
import datetime
import logging
import threading

from pymongo.errors import DuplicateKeyError

from . import ledger as states
from .bookings import REASON_USER, mark_booking_cancelled, mark_booking_confirmed, mark_payment_failed
from .config import Config
from .emails import invoice_email, refund_email
from .errors import GatewayError, InvalidStateError, NotFoundError, RefundError
from .pricing import refund_amount
from .services import best_effort
from .utils import utc_now

logger = logging.getLogger(__name__)

# Results of applying a gateway answer to the ledger
CONFIRMED = 'confirmed'
ALREADY_CONFIRMED = 'already_confirmed'
FAILED = 'failed'
NOT_FOUND = 'not_found'
AMOUNT_MISMATCH = 'amount_mismatch'
IGNORED = 'ignored'

# Gateway-neutral status words returned by adapters
GW_SUCCESS = 'success'
GW_FAILED = 'failed'
GW_PROCESSING = 'processing'


class PaymentGateway:
    """Shared reconciliation for one payment method.

    Subclasses implement new_transaction_id, _create_order, _query_payment,
    _request_refund and _query_refund.
    """

    method = None
    tag = '[GATEWAY]'

    def __init__(self, db, ledger, notifier, job_scheduler=None, timeout=None):
        self.db = db
        self.ledger = ledger
        self.notifier = notifier
        self.job_scheduler = job_scheduler
        self.timeout = timeout or Config.GATEWAY_TIMEOUT

    # ---------------------------
    # Adapter hooks
    # ---------------------------

    def new_transaction_id(self, booking, now):
        raise NotImplementedError

    def _create_order(self, booking, payment, client_ip, now):
        """Return {'pay_url': ..., **fields to store on the payment}"""
        raise NotImplementedError

    def _query_payment(self, payment):
        """Return {'status': GW_*, 'gateway_txn_id', 'amount', 'raw'}"""
        raise NotImplementedError

    def _request_refund(self, payment, amount, now):
        """Return {'status': GW_*, 'refund_transaction_id', 'gateway_refund_id', 'reason', 'raw'}"""
        raise NotImplementedError

    def _query_refund(self, payment):
        raise NotImplementedError

    # ---------------------------
    # Payment creation
    # ---------------------------

    def create_payment_url(self, booking, client_ip='127.0.0.1', now=None):
        """Start a fresh attempt for the booking and return its payment URL."""
        now = now or utc_now()
        transaction_id = self.new_transaction_id(booking, now)
        try:
            payment = self.ledger.record_attempt(booking, transaction_id, self.method, now=now)
        except DuplicateKeyError:
            raise InvalidStateError('Đang có một giao dịch thanh toán khác cho đặt phòng này')

        try:
            order = self._create_order(booking, payment, client_ip, now)
        except GatewayError as exc:
            logger.error("%s Create order failed for booking %s: %s", self.tag, booking['_id'], exc)
            self.ledger.transition(transaction_id, (states.PENDING,), states.FAILED, {'failure_reason': str(exc)}, now)
            raise

        self.ledger.patch(transaction_id, order, now)
        self.db.bookings.update_one(
            {'_id': booking['_id']},
            {'$set': {'payment_id': payment['_id'], 'payment_method': self.method, 'updated_at': now}},
        )
        logger.info("%s Payment %s created for booking %s", self.tag, transaction_id, booking['_id'])
        return {'pay_url': order['pay_url'], 'transaction_id': transaction_id, 'payment_id': payment['_id']}

    # ---------------------------
    # Reconciliation
    # ---------------------------

    def apply_result(self, transaction_id, success, gateway_txn_id=None, amount=None, raw=None, now=None):
        """Apply a verified gateway answer. Safe to call any number of times."""
        now = now or utc_now()
        payment = self.ledger.find_by_transaction(transaction_id)
        if payment is None or payment.get('payment_method') != self.method:
            logger.warning("%s Unknown transaction %s", self.tag, transaction_id)
            return NOT_FOUND

        if amount is not None and int(amount) != int(payment.get('amount') or 0):
            logger.error(
                "%s Amount mismatch for %s: expected %s, got %s",
                self.tag, transaction_id, payment.get('amount'), amount,
            )
            failed = self.ledger.transition(
                transaction_id, (states.PENDING,), states.FAILED,
                {'failure_reason': 'amount_mismatch', 'amount_received': int(amount), 'gateway_response': raw},
                now,
            )
            if failed is not None:
                mark_payment_failed(self.db, failed['booking_id'], now)
            return AMOUNT_MISMATCH

        if success:
            return self._apply_success(payment, gateway_txn_id, raw, now)
        return self._apply_failure(payment, raw, now)

    def _apply_success(self, payment, gateway_txn_id, raw, now):
        transaction_id = payment['transaction_id']
        updated = self.ledger.transition(
            transaction_id, states.SUPERSEDABLE, states.COMPLETED,
            {'gateway_txn_id': gateway_txn_id or payment.get('gateway_txn_id'), 'gateway_response': raw, 'paid_at': now},
            now,
        )
        if updated is None:
            current = self.ledger.find_by_transaction(transaction_id)
            if current and current.get('status') in states.PAID_STATUSES:
                self.ledger.patch_missing_gateway_txn(transaction_id, gateway_txn_id, now)
                return ALREADY_CONFIRMED
            # superseded or cancelled attempt that the guest still paid
            logger.error("%s Success reported for inactive payment %s", self.tag, transaction_id)
            self.ledger.patch(transaction_id, {'late_success': True, 'late_gateway_txn_id': gateway_txn_id}, now)
            return IGNORED

        booking = mark_booking_confirmed(self.db, updated['booking_id'], updated['_id'], now)
        if booking is None:
            logger.error("%s Payment %s completed but booking %s is not active",
                         self.tag, transaction_id, updated['booking_id'])
            self.ledger.patch(transaction_id, {'needs_review': True}, now)
            return CONFIRMED

        logger.info("%s Booking %s confirmed by %s", self.tag, booking['_id'], transaction_id)
        self._send_payment_confirmation(booking, updated)
        return CONFIRMED

    def _apply_failure(self, payment, raw, now):
        transaction_id = payment['transaction_id']
        updated = self.ledger.transition(transaction_id, (states.PENDING,), states.FAILED, {'gateway_response': raw}, now)
        if updated is not None:
            mark_payment_failed(self.db, updated['booking_id'], now)
            logger.info("%s Payment %s failed", self.tag, transaction_id)
            return FAILED
        current = self.ledger.find_by_transaction(transaction_id)
        if current and current.get('status') in states.PAID_STATUSES:
            return ALREADY_CONFIRMED
        return IGNORED

    @best_effort
    def _send_payment_confirmation(self, booking, payment):
        self.notifier.notify(
            booking.get('user_id'),
            'Thanh toán thành công',
            f"Đặt phòng {booking['_id']} đã được thanh toán và xác nhận.",
            'payment',
            {'booking_id': booking['_id'], 'payment_id': payment['_id']},
        )
        email = (booking.get('contact_info') or {}).get('email')
        subject, html = invoice_email(booking, payment)
        self.notifier.send_email(email, subject, html)

    def verify_payment_status(self, transaction_id):
        """Ask the gateway what happened to a transaction."""
        payment = self.ledger.find_by_transaction(transaction_id)
        if payment is None:
            raise NotFoundError('Không tìm thấy giao dịch')
        return self._query_payment(payment)

    def sync_payment(self, transaction_id, now=None):
        """Query the gateway and apply a definite answer to local state"""
        result = self.verify_payment_status(transaction_id)
        if result['status'] == GW_SUCCESS:
            outcome = self.apply_result(
                transaction_id, True, result.get('gateway_txn_id'), result.get('amount'), result.get('raw'), now,
            )
        elif result['status'] == GW_FAILED:
            outcome = self.apply_result(transaction_id, False, raw=result.get('raw'), now=now)
        else:
            outcome = None
        return result, outcome

    # ---------------------------
    # Refunds
    # ---------------------------

    def refund_payment(self, booking, now=None):
        """Refund the booking's paid attempt.

        Returns True when refunded, False when the gateway refused and
        'processing' when the gateway will answer later.
        """
        now = now or utc_now()
        if booking.get('status') not in Config.ACTIVE_BOOKING_STATUSES:
            raise RefundError('Đặt phòng không thể hoàn tiền')
        payment = self.ledger.find_latest(booking['_id'], (states.COMPLETED, states.REFUND_FAILED))
        if payment is None:
            raise RefundError('Không tìm thấy giao dịch đã thanh toán để hoàn tiền')

        amount = refund_amount(booking.get('final_price', 0), booking['check_in'], now)
        if amount <= 0:
            raise RefundError('Đặt phòng không đủ điều kiện hoàn tiền')

        claimed = self.ledger.transition(
            payment['transaction_id'], (states.COMPLETED, states.REFUND_FAILED), states.REFUNDING,
            {'refund_amount': amount, 'refund_requested_at': now, 'refund_fail_reason': None},
            now,
        )
        if claimed is None:
            raise RefundError('Giao dịch đang được hoàn tiền')

        try:
            outcome = self._request_refund(claimed, amount, now)
        except GatewayError as exc:
            logger.error("%s Refund request for %s failed: %s", self.tag, payment['transaction_id'], exc)
            self._finish_refund_failed(claimed, str(exc), None, now)
            return False

        return self._apply_refund_outcome(claimed, outcome, now)

    def _apply_refund_outcome(self, payment, outcome, now):
        status = outcome.get('status')
        if status == GW_SUCCESS:
            return self._finish_refund_success(payment, outcome, now)
        if status == GW_PROCESSING:
            fields = {k: outcome[k] for k in ('refund_transaction_id', 'gateway_refund_id') if outcome.get(k)}
            if fields:
                self.ledger.patch(payment['transaction_id'], fields, now)
            logger.info("%s Refund for %s is processing", self.tag, payment['transaction_id'])
            self.schedule_refund_recheck(payment['transaction_id'])
            return GW_PROCESSING
        self._finish_refund_failed(payment, outcome.get('reason') or 'refund rejected', outcome.get('raw'), now)
        return False

    def _finish_refund_success(self, payment, outcome, now):
        transaction_id = payment['transaction_id']
        updated = self.ledger.transition(
            transaction_id, (states.REFUNDING,), states.REFUNDED,
            {
                'refund_transaction_id': outcome.get('refund_transaction_id') or payment.get('refund_transaction_id'),
                'gateway_refund_id': outcome.get('gateway_refund_id') or payment.get('gateway_refund_id'),
                'refund_timestamp': now,
                'refund_response': outcome.get('raw'),
            },
            now,
        )
        if updated is None:
            return True

        booking = mark_booking_cancelled(
            self.db, updated['booking_id'], REASON_USER, now,
            extra={'payment_status': 'refunded', 'refund_amount': updated.get('refund_amount')},
        )
        logger.info("%s Refunded %s (%s)", self.tag, transaction_id, updated.get('refund_amount'))
        if booking is not None:
            self._send_refund_notice(booking, updated)
        return True

    @best_effort
    def _send_refund_notice(self, booking, payment):
        self.notifier.notify(
            booking.get('user_id'),
            'Hoàn tiền thành công',
            f"Đặt phòng {booking['_id']} đã được hủy và hoàn {payment.get('refund_amount', 0):,} VNĐ.",
            'payment',
            {'booking_id': booking['_id'], 'payment_id': payment['_id']},
        )
        subject, html = refund_email(booking, payment)
        self.notifier.send_email((booking.get('contact_info') or {}).get('email'), subject, html)

    def _finish_refund_failed(self, payment, reason, raw, now):
        self.ledger.transition(
            payment['transaction_id'], (states.REFUNDING,), states.REFUND_FAILED,
            {'refund_fail_reason': reason, 'refund_response': raw},
            now,
        )
        logger.warning("%s Refund for %s failed: %s", self.tag, payment['transaction_id'], reason)

    def check_refund_status(self, transaction_id, now=None):
        """Re-check a refund left in processing; returns the payment status."""
        now = now or utc_now()
        payment = self.ledger.find_by_transaction(transaction_id)
        if payment is None:
            raise NotFoundError('Không tìm thấy giao dịch')
        if payment.get('status') != states.REFUNDING:
            return payment.get('status')

        try:
            outcome = self._query_refund(payment)
        except GatewayError as exc:
            logger.warning("%s Refund status check for %s failed: %s", self.tag, transaction_id, exc)
            return states.REFUNDING

        if outcome.get('status') == GW_SUCCESS:
            self._finish_refund_success(payment, outcome, now)
            return states.REFUNDED
        if outcome.get('status') == GW_FAILED:
            self._finish_refund_failed(payment, outcome.get('reason') or 'refund rejected', outcome.get('raw'), now)
            return states.REFUND_FAILED
        return states.REFUNDING

    def schedule_refund_recheck(self, transaction_id, delay=None):
        delay = Config.REFUND_RECHECK_SECONDS if delay is None else delay
        if self.job_scheduler is not None:
            run_at = datetime.datetime.now() + datetime.timedelta(seconds=delay)
            self.job_scheduler.add_job(
                self._recheck_quietly, 'date', run_date=run_at, args=[transaction_id],
                id=f"refund-{transaction_id}", replace_existing=True,
            )
            return
        timer = threading.Timer(delay, self._recheck_quietly, args=[transaction_id])
        timer.daemon = True
        timer.start()

    def _recheck_quietly(self, transaction_id):
        try:
            self.check_refund_status(transaction_id)
        except Exception:
            logger.exception("%s Deferred refund check for %s crashed", self.tag, transaction_id)


def build_gateways(db, ledger, notifier, job_scheduler=None):
    """Instantiate every supported gateway keyed by payment method"""
    from .vnpay import VNPayGateway
    from .zalopay import ZaloPayGateway

    return {
        'vnpay': VNPayGateway(db, ledger, notifier, job_scheduler),
        'zalopay': ZaloPayGateway(db, ledger, notifier, job_scheduler),
    }
