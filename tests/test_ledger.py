"""
Payment ledger: attempts, supersession, conditional transitions
"""
from pymongo.errors import DuplicateKeyError
import pytest

from booking_service.ledger import CANCELLED, COMPLETED, FAILED, PENDING, REFUNDING
from conftest import NOW, _booking


def test_new_attempt_supersedes_older_ones(db, ledger):
    booking = _booking(db)
    first = ledger.record_attempt(booking, 'T1', 'vnpay', now=NOW)
    ledger.transition('T1', (PENDING,), FAILED, now=NOW)
    second = ledger.record_attempt(booking, 'T2', 'vnpay', now=NOW)
    third = ledger.record_attempt(booking, 'T3', 'zalopay', now=NOW)

    statuses = {p['transaction_id']: p['status'] for p in ledger.list_for_booking(booking['_id'])}
    assert statuses == {'T1': CANCELLED, 'T2': CANCELLED, 'T3': PENDING}
    assert first['amount'] == second['amount'] == third['amount'] == 1000000
    assert ledger.find_pending(booking['_id'])['transaction_id'] == 'T3'


def test_completed_attempt_is_not_superseded(db, ledger):
    booking = _booking(db)
    ledger.record_attempt(booking, 'T1', 'vnpay', now=NOW)
    ledger.transition('T1', (PENDING,), COMPLETED, now=NOW)

    ledger.supersede(booking['_id'], NOW)

    assert ledger.find_by_transaction('T1')['status'] == COMPLETED


def test_transition_only_from_expected_status(db, ledger):
    booking = _booking(db)
    ledger.record_attempt(booking, 'T1', 'vnpay', now=NOW)

    assert ledger.transition('T1', (PENDING,), COMPLETED, {'gateway_txn_id': 'G1'}, NOW)['status'] == COMPLETED
    # the loser of a callback/redirect race gets nothing back
    assert ledger.transition('T1', (PENDING,), COMPLETED, now=NOW) is None
    assert ledger.transition('T1', (COMPLETED,), REFUNDING, now=NOW)['gateway_txn_id'] == 'G1'


def test_transaction_ids_are_unique(db, ledger):
    ledger.record_attempt(_booking(db, booking_id='B1'), 'T1', 'vnpay', now=NOW)
    with pytest.raises(DuplicateKeyError):
        ledger.record_attempt(_booking(db, booking_id='B2'), 'T1', 'vnpay', now=NOW)


def test_gateway_txn_is_only_filled_once(db, ledger):
    booking = _booking(db)
    ledger.record_attempt(booking, 'T1', 'vnpay', now=NOW)

    assert ledger.patch_missing_gateway_txn('T1', 'G1', NOW) is True
    assert ledger.patch_missing_gateway_txn('T1', 'G2', NOW) is False
    assert ledger.find_by_transaction('T1')['gateway_txn_id'] == 'G1'
