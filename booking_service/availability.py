"""
Booking Service - Room availability

Two stays overlap when `existing.check_in < new.check_out` and
`existing.check_out > new.check_in`. Back-to-back stays (12:00 out, 14:00 in)
never overlap.

The query answers "is it free right now"; the night claims in `room_nights`
are what actually stop two concurrent requests from both booking the room.
Each active booking owns one claim document per local night it covers and
the claim `_id` is `<room_id>:<YYYY-MM-DD>`, so the second insert for a
shared night fails with DuplicateKeyError.
"""
import datetime
import logging

from pymongo.errors import DuplicateKeyError

from .config import Config
from .errors import RoomUnavailableError
from .utils import normalize_check_in, normalize_check_out, stay_nights, utc_now

logger = logging.getLogger(__name__)

# A claim whose booking never got inserted is abandoned after this long
STALE_CLAIM_GRACE = datetime.timedelta(minutes=5)


def _overlap_query(check_in, check_out):
    return {
        'status': {'$in': list(Config.ACTIVE_BOOKING_STATUSES)},
        'check_in': {'$lt': normalize_check_out(check_out)},
        'check_out': {'$gt': normalize_check_in(check_in)},
    }


def is_room_available(db, room_id, check_in, check_out, exclude_booking_id=None):
    query = _overlap_query(check_in, check_out)
    query['room_id'] = room_id
    if exclude_booking_id:
        query['_id'] = {'$ne': exclude_booking_id}
    return db.bookings.find_one(query, {'_id': 1}) is None


def get_booked_room_ids(db, check_in, check_out):
    """All room ids with an active booking overlapping the range"""
    return set(db.bookings.distinct('room_id', _overlap_query(check_in, check_out)))


def _claim_id(room_id, night):
    return f"{room_id}:{night}"


def _is_stale_claim(db, claim, now):
    holder = db.bookings.find_one({'_id': claim.get('booking_id')}, {'status': 1})
    if holder is None:
        claimed_at = claim.get('claimed_at')
        return claimed_at is None or now - claimed_at > STALE_CLAIM_GRACE
    return holder.get('status') not in Config.ACTIVE_BOOKING_STATUSES


def _take_over_claim(db, claim_id, booking_id, now):
    claim = db.room_nights.find_one({'_id': claim_id})
    if claim is None:
        # Released between our insert and this read; try once more
        try:
            db.room_nights.insert_one(_claim_doc(claim_id, booking_id, now))
            return True
        except DuplicateKeyError:
            return False
    if claim.get('booking_id') == booking_id:
        return True
    if not _is_stale_claim(db, claim, now):
        return False
    result = db.room_nights.update_one(
        {'_id': claim_id, 'booking_id': claim.get('booking_id')},
        {'$set': {'booking_id': booking_id, 'claimed_at': now}},
    )
    if result.modified_count == 1:
        logger.info("[AVAILABILITY] Reclaimed stale night %s from %s", claim_id, claim.get('booking_id'))
        return True
    return False


def _claim_doc(claim_id, booking_id, now):
    room_id, night = claim_id.rsplit(':', 1)
    return {
        '_id': claim_id,
        'room_id': room_id,
        'night': night,
        'booking_id': booking_id,
        'claimed_at': now,
    }


def claim_room_nights(db, room_id, booking_id, check_in, check_out, now=None):
    """Claim every night of the stay for booking_id or claim nothing."""
    now = now or utc_now()
    claimed = []
    for night in stay_nights(check_in, check_out):
        claim_id = _claim_id(room_id, night)
        try:
            db.room_nights.insert_one(_claim_doc(claim_id, booking_id, now))
        except DuplicateKeyError:
            if not _take_over_claim(db, claim_id, booking_id, now):
                if claimed:
                    db.room_nights.delete_many({'_id': {'$in': claimed}, 'booking_id': booking_id})
                raise RoomUnavailableError('Phòng đã được đặt trong khoảng thời gian này')
        claimed.append(claim_id)
    return claimed


def release_room_nights(db, booking_id):
    result = db.room_nights.delete_many({'booking_id': booking_id})
    return result.deleted_count
