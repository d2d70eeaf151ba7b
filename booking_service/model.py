"""Booking Service Database Models"""
import logging

from pymongo import MongoClient, ASCENDING, DESCENDING

from .config import Config

logger = logging.getLogger(__name__)


class Database:
    """Thin wrapper around a pymongo database exposing the service collections.

    Pass an existing database object (e.g. a mongomock one) to skip connecting.
    """

    def __init__(self, mongo_db=None):
        if mongo_db is None:
            self._client = MongoClient(Config.MONGO_URI)
            mongo_db = self._client[Config.DB_NAME]
        else:
            self._client = None
        self._db = mongo_db

    @property
    def bookings(self):
        return self._db['bookings']

    @property
    def payments(self):
        return self._db['payments']

    @property
    def vouchers(self):
        return self._db['vouchers']

    @property
    def rooms(self):
        return self._db['rooms']

    @property
    def hotels(self):
        return self._db['hotels']

    @property
    def room_nights(self):
        return self._db['room_nights']

    @property
    def job_locks(self):
        return self._db['job_locks']

    def init_indexes(self, partial_indexes=True):
        """Create indexes. `partial_indexes=False` skips the ones that need a
        partialFilterExpression (unsupported by some in-memory backends)."""
        try:
            self.bookings.create_index([('user_id', ASCENDING), ('created_at', DESCENDING)])
            self.bookings.create_index([('room_id', ASCENDING), ('status', ASCENDING), ('check_in', ASCENDING)])
            self.bookings.create_index([('status', ASCENDING), ('payment_status', ASCENDING)])
            self.bookings.create_index([('hotel_id', ASCENDING), ('created_at', DESCENDING)])

            self.payments.create_index([('transaction_id', ASCENDING)], unique=True)
            self.payments.create_index([('booking_id', ASCENDING), ('created_at', DESCENDING)])
            self.payments.create_index([('status', ASCENDING), ('updated_at', ASCENDING)])

            self.vouchers.create_index([('code', ASCENDING)], unique=True)

            self.room_nights.create_index([('room_id', ASCENDING), ('night', ASCENDING)], unique=True)
            self.room_nights.create_index([('booking_id', ASCENDING)])
            logger.info("[DB] Booking indexes created")
        except Exception as e:
            logger.warning("[DB] Index: %s", e)

        if not partial_indexes:
            return

        # One live attempt per booking
        try:
            self.payments.create_index(
                [('booking_id', ASCENDING)],
                unique=True,
                partialFilterExpression={'status': 'pending'},
                name='one_pending_payment_per_booking',
            )
        except Exception as e:
            # Index may already exist with different options; keep service booting.
            logger.warning("[DB] Partial index: %s", e)


_database = None


def get_database():
    """Process-wide Database, created on first use"""
    global _database
    if _database is None:
        _database = Database()
        _database.init_indexes()
    return _database
