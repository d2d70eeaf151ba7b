"""
Booking Service - Payment ledger

Every payment attempt is a document in `payments`, keyed by a unique
`transaction_id`. Status changes go through `transition()`, an atomic
conditional update on the current status: when a callback and a browser
redirect race, exactly one of them gets the document back and does the
follow-up work.
"""
import logging

from pymongo import DESCENDING, ReturnDocument

from .utils import generate_payment_id, utc_now

logger = logging.getLogger(__name__)

PENDING = 'pending'
COMPLETED = 'completed'
FAILED = 'failed'
CANCELLED = 'cancelled'
REFUNDING = 'refunding'
REFUNDED = 'refunded'
REFUND_FAILED = 'refund_failed'

SUPERSEDABLE = (PENDING, FAILED)
PAID_STATUSES = (COMPLETED, REFUNDING, REFUNDED, REFUND_FAILED)


class PaymentLedger:

    def __init__(self, db):
        self.db = db

    @property
    def collection(self):
        return self.db.payments

    def supersede(self, booking_id, now=None):
        """Cancel every pending/failed attempt of the booking"""
        now = now or utc_now()
        result = self.collection.update_many(
            {'booking_id': booking_id, 'status': {'$in': list(SUPERSEDABLE)}},
            {'$set': {'status': CANCELLED, 'superseded_at': now, 'updated_at': now}},
        )
        if result.modified_count:
            logger.info("[LEDGER] Superseded %s attempt(s) for booking %s", result.modified_count, booking_id)
        return result.modified_count

    def record_attempt(self, booking, transaction_id, payment_method, amount=None, extra=None, now=None):
        """Supersede older attempts, then store a fresh pending one"""
        now = now or utc_now()
        self.supersede(booking['_id'], now)
        payment = {
            '_id': generate_payment_id(),
            'booking_id': booking['_id'],
            'user_id': booking.get('user_id'),
            'amount': int(round(float(booking.get('final_price', 0) if amount is None else amount))),
            'currency': 'VND',
            'payment_method': payment_method,
            'transaction_id': transaction_id,
            'status': PENDING,
            'gateway_txn_id': None,
            'created_at': now,
            'updated_at': now,
        }
        if extra:
            payment.update(extra)
        self.collection.insert_one(payment)
        return payment

    def find_by_transaction(self, transaction_id):
        if not transaction_id:
            return None
        return self.collection.find_one({'transaction_id': transaction_id})

    def find_latest(self, booking_id, statuses=None):
        query = {'booking_id': booking_id}
        if statuses:
            query['status'] = {'$in': list(statuses)}
        return self.collection.find_one(query, sort=[('created_at', DESCENDING)])

    def find_pending(self, booking_id):
        return self.find_latest(booking_id, (PENDING,))

    def list_for_booking(self, booking_id):
        return list(self.collection.find({'booking_id': booking_id}).sort('created_at', DESCENDING))

    def list_by_status(self, status, updated_before=None):
        query = {'status': status}
        if updated_before is not None:
            query['updated_at'] = {'$lt': updated_before}
        return list(self.collection.find(query))

    def transition(self, transaction_id, from_statuses, to_status, fields=None, now=None):
        """Move a payment from one of `from_statuses` to `to_status`.

        Returns the updated document, or None when the payment was not in
        an expected status (someone else already moved it).
        """
        now = now or utc_now()
        update = {'status': to_status, 'updated_at': now}
        if fields:
            update.update(fields)
        return self.collection.find_one_and_update(
            {'transaction_id': transaction_id, 'status': {'$in': list(from_statuses)}},
            {'$set': update},
            return_document=ReturnDocument.AFTER,
        )

    def patch(self, transaction_id, fields, now=None):
        now = now or utc_now()
        self.collection.update_one(
            {'transaction_id': transaction_id},
            {'$set': {**fields, 'updated_at': now}},
        )

    def patch_missing_gateway_txn(self, transaction_id, gateway_txn_id, now=None):
        """Fill the gateway correlation id only if nothing is stored yet"""
        if not gateway_txn_id:
            return False
        now = now or utc_now()
        result = self.collection.update_one(
            {'transaction_id': transaction_id, 'gateway_txn_id': {'$in': [None, '']}},
            {'$set': {'gateway_txn_id': gateway_txn_id, 'updated_at': now}},
        )
        return result.modified_count == 1
