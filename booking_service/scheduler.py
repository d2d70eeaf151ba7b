# Booking Service - Background jobs (payment expiry janitor, refund follow-up)
import datetime
import logging
import os
import socket
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.errors import DuplicateKeyError

from .config import Config
from .ledger import REFUNDING
from .utils import utc_now

logger = logging.getLogger(__name__)

EXPIRY_JOB = 'cancel_expired_bookings'
REFUND_JOB = 'reconcile_refunds'


class JobLock:
    """Lease on a named job so only one process runs it at a time.

    A process-local lock covers threads; a `job_locks` document with an
    expiry covers other replicas sharing the database.
    """

    _local_locks = {}
    _guard = threading.Lock()

    def __init__(self, db, name, owner=None, lease_seconds=None):
        self.db = db
        self.name = name
        self.owner = owner or f"{socket.gethostname()}:{os.getpid()}"
        self.lease = datetime.timedelta(seconds=lease_seconds or Config.JOB_LOCK_SECONDS)
        with JobLock._guard:
            self._local = JobLock._local_locks.setdefault(name, threading.Lock())

    def acquire(self, now=None):
        now = now or utc_now()
        if not self._local.acquire(blocking=False):
            return False
        try:
            self.db.job_locks.find_one_and_update(
                {'_id': self.name, '$or': [{'locked_until': {'$lt': now}}, {'owner': self.owner}]},
                {'$set': {'owner': self.owner, 'locked_until': now + self.lease, 'acquired_at': now}},
                upsert=True,
            )
        except DuplicateKeyError:
            # held by another replica
            self._local.release()
            return False
        return True

    def release(self):
        self.db.job_locks.update_one(
            {'_id': self.name, 'owner': self.owner},
            {'$set': {'locked_until': datetime.datetime(1970, 1, 1)}},
        )
        self._local.release()


def cancel_expired_bookings(manager, now=None):
    """Cancel pending bookings whose payment window has run out.

    Returns {'checked', 'cancelled', 'skipped'}; one failing booking does
    not stop the run.
    """
    now = now or utc_now()
    summary = {'checked': 0, 'cancelled': 0, 'skipped': 0}
    lock = JobLock(manager.db, EXPIRY_JOB)
    if not lock.acquire(now):
        logger.info("[SCHEDULER] %s already running elsewhere, skipping", EXPIRY_JOB)
        summary['locked'] = True
        return summary

    try:
        expired = manager.find_expired_bookings(now)
        logger.info("[SCHEDULER] Found %s booking(s) past the payment window", len(expired))
        for booking in expired:
            summary['checked'] += 1
            try:
                if manager.expire_booking(booking, now) is not None:
                    summary['cancelled'] += 1
                else:
                    summary['skipped'] += 1
            except Exception:
                logger.exception("[SCHEDULER] Failed to expire booking %s", booking.get('_id'))
                summary['skipped'] += 1
    finally:
        lock.release()

    logger.info("[SCHEDULER] Expiry run done: %s", summary)
    return summary


def reconcile_refunds(manager, now=None):
    """Re-query refunds stuck in processing (e.g. the process restarted)."""
    now = now or utc_now()
    cutoff = now - datetime.timedelta(seconds=Config.REFUND_RECHECK_SECONDS)
    results = {}
    lock = JobLock(manager.db, REFUND_JOB)
    if not lock.acquire(now):
        return results
    try:
        for payment in manager.ledger.list_by_status(REFUNDING, updated_before=cutoff):
            gateway = manager.gateways.get(payment.get('payment_method'))
            if gateway is None:
                continue
            try:
                results[payment['transaction_id']] = gateway.check_refund_status(payment['transaction_id'], now)
            except Exception:
                logger.exception("[SCHEDULER] Refund check for %s crashed", payment['transaction_id'])
    finally:
        lock.release()
    return results


def start_scheduler(manager, scheduler=None):
    """Start the background scheduler and register the recurring jobs"""
    scheduler = scheduler or BackgroundScheduler()

    scheduler.add_job(
        cancel_expired_bookings,
        IntervalTrigger(minutes=Config.EXPIRY_JOB_INTERVAL_MINUTES),
        args=[manager],
        id=EXPIRY_JOB,
        name='Cancel bookings past the payment window',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        reconcile_refunds,
        IntervalTrigger(minutes=Config.EXPIRY_JOB_INTERVAL_MINUTES),
        args=[manager],
        id=REFUND_JOB,
        name='Re-check refunds in processing',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
    logger.info("[SCHEDULER] Started - expiry check every %s minute(s)", Config.EXPIRY_JOB_INTERVAL_MINUTES)
    return scheduler
