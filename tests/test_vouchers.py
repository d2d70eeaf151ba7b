"""
Voucher evaluation and usage accounting
"""
import datetime

import pytest

from booking_service.errors import NotFoundError, ValidationError, VoucherError
from booking_service.vouchers import (
    calculate_discount, consume_voucher, create_voucher, is_voucher_valid, list_available_vouchers, normalize_voucher,
    release_voucher, update_voucher, validate_voucher,
)
from conftest import NOW, _voucher


class TestNormalize:

    def test_percentage_is_clamped_to_100(self):
        voucher = normalize_voucher({'code': 'big', 'discount_type': 'percentage', 'discount': 150})
        assert voucher['discount'] == 100
        assert voucher['code'] == 'BIG'

    def test_fixed_voucher_drops_max_discount(self):
        voucher = normalize_voucher({'code': 'x', 'discount_type': 'fixed', 'discount': 50000, 'max_discount': 10})
        assert voucher['max_discount'] is None

    def test_start_after_expiry_is_pulled_back(self):
        voucher = normalize_voucher({
            'code': 'x', 'discount': 1,
            'start_date': '2025-07-01', 'expiry_date': '2025-06-01',
        })
        assert voucher['start_date'] == voucher['expiry_date']

    def test_negative_discount_rejected(self):
        with pytest.raises(ValidationError):
            normalize_voucher({'code': 'x', 'discount': -5})

    def test_duplicate_code_rejected(self, db):
        create_voucher(db, {'code': 'summer', 'discount': 10000}, NOW)
        with pytest.raises(ValidationError):
            create_voucher(db, {'code': 'SUMMER', 'discount': 20000}, NOW)


def test_percentage_discount_respects_cap():
    voucher = {'discount_type': 'percentage', 'discount': 20, 'max_discount': 150000}
    assert calculate_discount(voucher, 1000000) == 150000
    assert calculate_discount(voucher, 500000) == 100000


def test_no_voucher_is_a_free_pass(db):
    result = validate_voucher(db, None, 1000000, NOW)
    assert result['success'] is True
    assert result['discount_amount'] == 0


@pytest.mark.parametrize('overrides, price, error_code', [
    ({'status': 'inactive'}, 1000000, 'VOUCHER_INACTIVE'),
    ({'usage_limit': 2, 'usage_count': 2}, 1000000, 'VOUCHER_USAGE_LIMIT_EXCEEDED'),
    ({'min_order_value': 2000000}, 1000000, 'INVALID_MIN_ORDER_VALUE'),
    ({'start_date': datetime.datetime(2025, 6, 5)}, 1000000, 'VOUCHER_INVALID_DATE'),
    ({'expiry_date': datetime.datetime(2025, 5, 20)}, 1000000, 'VOUCHER_INVALID_DATE'),
])
def test_validate_voucher_failures(db, overrides, price, error_code):
    _voucher(db, **overrides)
    result = validate_voucher(db, 'VCH001', price, NOW)
    assert result['success'] is False
    assert result['error_code'] == error_code


def test_unknown_voucher(db):
    assert validate_voucher(db, 'NOPE', 1000000, NOW)['error_code'] == 'VOUCHER_NOT_FOUND'


def test_voucher_valid_through_its_last_local_day(db):
    # expires "2025-06-01" local; NOW is 10:00 local that day
    _voucher(db, expiry_date=datetime.datetime(2025, 5, 31, 17, 0))
    assert validate_voucher(db, 'VCH001', 1000000, NOW)['success'] is True


def test_fixed_discount_never_exceeds_price(db):
    _voucher(db, discount=300000)
    result = validate_voucher(db, 'VCH001', 200000, NOW)
    assert result['discount_amount'] == 200000


def test_consume_deactivates_at_limit_and_release_reactivates(db):
    voucher = _voucher(db, usage_limit=1)

    consume_voucher(db, voucher, NOW)
    stored = db.vouchers.find_one({'_id': 'VCH001'})
    assert stored['usage_count'] == 1
    assert stored['status'] == 'inactive'

    assert release_voucher(db, 'VCH001', NOW) is True
    stored = db.vouchers.find_one({'_id': 'VCH001'})
    assert stored['usage_count'] == 0
    assert stored['status'] == 'active'


def test_last_use_cannot_be_taken_twice(db):
    voucher = _voucher(db, usage_limit=1)
    consume_voucher(db, voucher, NOW)

    # a second booking still holding the stale read
    with pytest.raises(VoucherError):
        consume_voucher(db, voucher, NOW)
    assert db.vouchers.find_one({'_id': 'VCH001'})['usage_count'] == 1


def test_release_keeps_manually_disabled_voucher_inactive(db):
    _voucher(db, status='inactive', usage_count=1)
    release_voucher(db, 'VCH001', NOW)
    stored = db.vouchers.find_one({'_id': 'VCH001'})
    assert stored['usage_count'] == 0
    assert stored['status'] == 'inactive'


def test_release_never_goes_below_zero(db):
    _voucher(db)
    assert release_voucher(db, 'VCH001', NOW) is False
    assert db.vouchers.find_one({'_id': 'VCH001'})['usage_count'] == 0


# ============== Admin updates ==============

class TestUpdateVoucher:

    def test_rules_apply_to_the_merged_voucher(self, db):
        _voucher(db, discount_type='percentage', discount=10, max_discount=50000)

        voucher = update_voucher(db, 'VCH001', {'discount': 250, 'code': 'HACKED', 'usage_count': 99}, NOW)

        assert voucher['discount'] == 100
        assert voucher['max_discount'] == 50000
        assert voucher['code'] == 'VCH001'
        assert voucher['usage_count'] == 0

    def test_switching_to_fixed_drops_max_discount(self, db):
        _voucher(db, discount_type='percentage', discount=10, max_discount=50000)
        voucher = update_voucher(db, 'VCH001', {'discount_type': 'fixed', 'discount': 20000}, NOW)
        assert voucher['max_discount'] is None

    def test_start_after_expiry_is_pulled_back(self, db):
        _voucher(db, expiry_date=datetime.datetime(2025, 6, 30))
        voucher = update_voucher(db, 'VCH001', {'start_date': '2025-07-15'}, NOW)
        assert voucher['start_date'] == voucher['expiry_date']

    def test_raising_the_limit_reactivates_a_used_up_voucher(self, db):
        _voucher(db, usage_limit=1, usage_count=1, status='inactive', deactivated_reason='usage_limit')
        voucher = update_voucher(db, 'VCH001', {'usage_limit': 5}, NOW)
        assert voucher['status'] == 'active'
        assert voucher['deactivated_reason'] is None

    def test_limit_below_usage_is_rejected(self, db):
        _voucher(db, usage_limit=5, usage_count=3)
        with pytest.raises(ValidationError):
            update_voucher(db, 'VCH001', {'usage_limit': 2}, NOW)

    @pytest.mark.parametrize('changes', [
        {'discount': 'lots'},
        {'expiry_date': 'someday'},
        {'status': 'archived'},
    ])
    def test_bad_values(self, db, changes):
        _voucher(db)
        with pytest.raises(ValidationError):
            update_voucher(db, 'VCH001', changes, NOW)

    def test_unknown_voucher(self, db):
        with pytest.raises(NotFoundError):
            update_voucher(db, 'NOPE', {'discount': 1}, NOW)


# ============== Validity ==============

def test_is_voucher_valid_checks_order_value_only_when_given():
    voucher = {'status': 'active', 'min_order_value': 500000, 'usage_limit': None, 'usage_count': 0}
    assert is_voucher_valid(voucher, None, NOW)
    assert is_voucher_valid(voucher, 500000, NOW)
    assert not is_voucher_valid(voucher, 499999, NOW)


def test_available_vouchers_skip_unusable_ones(db):
    _voucher(db, 'V_OK')
    _voucher(db, 'V_USED', usage_limit=1, usage_count=1)
    _voucher(db, 'V_OFF', status='inactive')
    _voucher(db, 'V_EXPIRED', expiry_date=datetime.datetime(2025, 5, 1))
    _voucher(db, 'V_BIG', min_order_value=5000000)

    assert {v['_id'] for v in list_available_vouchers(db, None, NOW)} == {'V_OK', 'V_BIG'}
    assert [v['_id'] for v in list_available_vouchers(db, 1000000, NOW)] == ['V_OK']
