"""
Voucher Routes - admin management and the guest-facing list
"""
from flask import Blueprint, current_app, jsonify, request

from .decorators import admin_required, token_required
from .errors import ValidationError
from .utils import format_voucher_response
from .vouchers import create_voucher, list_available_vouchers, list_vouchers, update_voucher


voucher_bp = Blueprint('vouchers', __name__, url_prefix='/api/vouchers')


def _db():
    return current_app.extensions['booking_manager'].db


@voucher_bp.route('/available', methods=['GET'])
@token_required
def available_vouchers(current_user):
    order_value = request.args.get('total_amount')
    if order_value is not None:
        try:
            order_value = float(order_value)
        except ValueError:
            raise ValidationError('Giá trị đơn hàng không hợp lệ', error_code='INVALID_TOTAL_AMOUNT')
        if order_value < 0:
            raise ValidationError('Giá trị đơn hàng không hợp lệ', error_code='INVALID_TOTAL_AMOUNT')

    vouchers = list_available_vouchers(_db(), order_value)
    return jsonify({
        'success': True,
        'vouchers': [format_voucher_response(v) for v in vouchers],
        'total': len(vouchers),
    })


@voucher_bp.route('', methods=['GET'])
@token_required
@admin_required
def get_vouchers(current_user):
    vouchers = list_vouchers(_db(), request.args.get('status'))
    return jsonify({
        'success': True,
        'vouchers': [format_voucher_response(v) for v in vouchers],
        'total': len(vouchers),
    })


@voucher_bp.route('', methods=['POST'])
@token_required
@admin_required
def add_voucher(current_user):
    data = request.get_json(silent=True) or {}
    voucher = create_voucher(_db(), data)
    return jsonify({'success': True, 'voucher': format_voucher_response(voucher)}), 201


@voucher_bp.route('/<voucher_id>', methods=['PUT'])
@token_required
@admin_required
def edit_voucher(current_user, voucher_id):
    data = request.get_json(silent=True) or {}
    voucher = update_voucher(_db(), voucher_id, data)
    return jsonify({'success': True, 'voucher': format_voucher_response(voucher)})
