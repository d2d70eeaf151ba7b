"""
Room availability and night claims
"""
import datetime

import pytest

from booking_service.availability import (
    claim_room_nights, get_booked_room_ids, is_room_available, release_room_nights,
)
from booking_service.errors import RoomUnavailableError
from conftest import NOW, _booking


def test_overlapping_stay_is_unavailable(db):
    _booking(db)
    assert not is_room_available(db, 'R101', '2025-06-11', '2025-06-13')
    assert not is_room_available(db, 'R101', '2025-06-09', '2025-06-11')


def test_back_to_back_stays_do_not_overlap(db):
    _booking(db)
    # existing stay checks out 12:00 on the 12th, next guest arrives 14:00
    assert is_room_available(db, 'R101', '2025-06-12', '2025-06-14')
    assert is_room_available(db, 'R101', '2025-06-08', '2025-06-10')


def test_cancelled_and_completed_bookings_free_the_room(db):
    _booking(db, booking_id='B1', status='cancelled')
    _booking(db, booking_id='B2', status='completed')
    assert is_room_available(db, 'R101', '2025-06-10', '2025-06-12')


def test_exclude_booking_ignores_itself(db):
    _booking(db, booking_id='B1')
    assert is_room_available(db, 'R101', '2025-06-10', '2025-06-12', exclude_booking_id='B1')


def test_booked_room_ids(db):
    _booking(db, booking_id='B1', room_id='R101')
    _booking(db, booking_id='B2', room_id='R102', status='confirmed')
    _booking(db, booking_id='B3', room_id='R103', status='cancelled')
    assert get_booked_room_ids(db, '2025-06-11', '2025-06-12') == {'R101', 'R102'}


def test_claims_cover_each_night(db):
    claimed = claim_room_nights(db, 'R101', 'B1', '2025-06-10', '2025-06-13', NOW)
    assert claimed == ['R101:2025-06-10', 'R101:2025-06-11', 'R101:2025-06-12']


def test_second_claim_on_shared_night_fails_without_leftovers(db):
    _booking(db, booking_id='B1')
    claim_room_nights(db, 'R101', 'B1', '2025-06-10', '2025-06-12', NOW)

    with pytest.raises(RoomUnavailableError):
        claim_room_nights(db, 'R101', 'B2', '2025-06-09', '2025-06-11', NOW)

    assert db.room_nights.count_documents({'booking_id': 'B2'}) == 0


def test_claim_of_cancelled_booking_is_taken_over(db):
    _booking(db, booking_id='B1', status='cancelled')
    claim_room_nights(db, 'R101', 'B1', '2025-06-10', '2025-06-12', NOW)

    claim_room_nights(db, 'R101', 'B2', '2025-06-10', '2025-06-11', NOW)

    assert db.room_nights.find_one({'_id': 'R101:2025-06-10'})['booking_id'] == 'B2'


def test_orphan_claim_is_kept_during_grace_period(db):
    claim_room_nights(db, 'R101', 'GHOST', '2025-06-10', '2025-06-11', NOW)

    with pytest.raises(RoomUnavailableError):
        claim_room_nights(db, 'R101', 'B2', '2025-06-10', '2025-06-11', NOW + datetime.timedelta(minutes=1))

    claim_room_nights(db, 'R101', 'B2', '2025-06-10', '2025-06-11', NOW + datetime.timedelta(minutes=10))


def test_release_room_nights(db):
    claim_room_nights(db, 'R101', 'B1', '2025-06-10', '2025-06-12', NOW)
    assert release_room_nights(db, 'B1') == 2
    assert db.room_nights.count_documents({}) == 0
