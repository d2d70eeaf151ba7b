"""
Expiry janitor, refund reconciliation and the job lease
"""
import datetime
from unittest.mock import MagicMock, patch

from booking_service.config import Config
from booking_service.scheduler import (
    EXPIRY_JOB, REFUND_JOB, JobLock, cancel_expired_bookings, reconcile_refunds, start_scheduler,
)
from booking_service.vnpay import VNPayGateway
from conftest import NOW, _booking, _payment

HOUR = datetime.timedelta(hours=1)


def test_cancels_only_bookings_past_the_window(db, manager):
    _booking(db, booking_id='OLD', created_at=NOW - 25 * HOUR)
    _booking(db, booking_id='FRESH', created_at=NOW - 2 * HOUR)
    _booking(db, booking_id='RETRIED', created_at=NOW - 30 * HOUR, last_retry_at=NOW - HOUR)
    _booking(db, booking_id='PAID', created_at=NOW - 30 * HOUR, status='confirmed', payment_status='paid')

    summary = cancel_expired_bookings(manager, NOW)

    assert summary == {'checked': 1, 'cancelled': 1, 'skipped': 0}
    statuses = {b['_id']: b['status'] for b in db.bookings.find()}
    assert statuses == {'OLD': 'cancelled', 'FRESH': 'pending', 'RETRIED': 'pending', 'PAID': 'confirmed'}


def test_one_failure_does_not_stop_the_run(db, manager):
    _booking(db, booking_id='B1', created_at=NOW - 25 * HOUR)
    _booking(db, booking_id='B2', created_at=NOW - 26 * HOUR)
    real_expire = manager.expire_booking

    def flaky(booking, now=None):
        if booking['_id'] == 'B1':
            raise RuntimeError('boom')
        return real_expire(booking, now)

    with patch.object(manager, 'expire_booking', side_effect=flaky):
        summary = cancel_expired_bookings(manager, NOW)

    assert summary['cancelled'] == 1
    assert summary['skipped'] == 1
    assert db.bookings.find_one({'_id': 'B2'})['status'] == 'cancelled'


def test_paid_at_gateway_is_not_cancelled(db, manager):
    booking = _booking(db, created_at=NOW - 25 * HOUR)
    _payment(db, booking, status='pending')
    answer = {'status': 'processing', 'raw': {}}
    with patch.object(VNPayGateway, '_query_payment', return_value=answer):
        summary = cancel_expired_bookings(manager, NOW)
    assert summary['skipped'] == 1
    assert db.bookings.find_one({'_id': booking['_id']})['status'] == 'pending'


def test_lock_held_by_another_replica_skips_run(db, manager):
    _booking(db, created_at=NOW - 25 * HOUR)
    db.job_locks.insert_one({'_id': EXPIRY_JOB, 'owner': 'other-host:1', 'locked_until': NOW + HOUR})

    summary = cancel_expired_bookings(manager, NOW)

    assert summary['locked'] is True
    assert db.bookings.find_one({'_id': 'BOOKTEST1'})['status'] == 'pending'


def test_expired_lease_is_taken_over(db):
    db.job_locks.insert_one({'_id': EXPIRY_JOB, 'owner': 'other-host:1', 'locked_until': NOW - HOUR})
    lock = JobLock(db, EXPIRY_JOB, owner='me:1')
    assert lock.acquire(NOW) is True
    assert db.job_locks.find_one({'_id': EXPIRY_JOB})['owner'] == 'me:1'
    lock.release()


def test_lock_is_exclusive_within_the_process(db):
    first = JobLock(db, 'some-job', owner='me:1')
    second = JobLock(db, 'some-job', owner='me:1')
    assert first.acquire(NOW) is True
    assert second.acquire(NOW) is False
    first.release()
    assert second.acquire(NOW) is True
    second.release()


def test_reconcile_refunds_settles_stuck_refunds(db, manager):
    booking = _booking(db, status='confirmed', payment_status='paid')
    _payment(db, booking, status='refunding', refund_amount=1000000, updated_at=NOW - HOUR)
    with patch.object(VNPayGateway, '_query_refund', return_value={'status': 'success', 'raw': {}}):
        results = reconcile_refunds(manager, NOW)
    assert results == {'TXN001': 'refunded'}
    assert db.bookings.find_one({'_id': booking['_id']})['status'] == 'cancelled'


def test_start_scheduler_registers_jobs(manager):
    scheduler = MagicMock()
    scheduler.running = False

    start_scheduler(manager, scheduler)

    job_ids = [c.kwargs['id'] for c in scheduler.add_job.call_args_list]
    assert job_ids == [EXPIRY_JOB, REFUND_JOB]
    for call in scheduler.add_job.call_args_list:
        assert call.kwargs['max_instances'] == 1
        assert call.kwargs['coalesce'] is True
    assert scheduler.add_job.call_args_list[0].args[1].interval == datetime.timedelta(
        minutes=Config.EXPIRY_JOB_INTERVAL_MINUTES)
    scheduler.start.assert_called_once()
