"""
Payment Routes - gateway callbacks, browser returns and status checks
"""
from flask import Blueprint, current_app, jsonify, redirect, request

from .decorators import admin_required, token_required
from .errors import ForbiddenError, NotFoundError, ValidationError
from .utils import format_payment_response


payment_bp = Blueprint('payments', __name__, url_prefix='/api/payments')


def _manager():
    return current_app.extensions['booking_manager']


def _gateway(method):
    return _manager().gateway_for(method)


# ---------------------------
# ZaloPay
# ---------------------------


@payment_bp.route('/zalopay/callback', methods=['POST'])
def zalopay_callback():
    body = request.get_json(silent=True)
    if body is None:
        body = request.form.to_dict()
    return jsonify(_gateway('zalopay').handle_callback(body or {}))


@payment_bp.route('/zalopay/return', methods=['GET'])
def zalopay_return():
    return redirect(_gateway('zalopay').handle_redirect(request.args.to_dict()))


# ---------------------------
# VNPay
# ---------------------------


@payment_bp.route('/vnpay/ipn', methods=['GET'])
def vnpay_ipn():
    return jsonify(_gateway('vnpay').handle_callback(request.args.to_dict()))


@payment_bp.route('/vnpay/return', methods=['GET'])
def vnpay_return():
    return redirect(_gateway('vnpay').handle_redirect(request.args.to_dict()))


# ---------------------------
# Status checks
# ---------------------------


@payment_bp.route('/<transaction_id>/verify', methods=['GET'])
@token_required
@admin_required
def verify_payment(current_user, transaction_id):
    """Ask the gateway about a transaction and apply any definite answer."""
    method = request.args.get('method')
    payment = _manager().ledger.find_by_transaction(transaction_id)
    if payment is None:
        raise NotFoundError('Không tìm thấy giao dịch')
    method = method or payment.get('payment_method')
    if method != payment.get('payment_method'):
        raise ValidationError('Phương thức thanh toán không khớp với giao dịch')

    result, outcome = _gateway(method).sync_payment(transaction_id)
    payment = _manager().ledger.find_by_transaction(transaction_id)
    return jsonify({
        'success': True,
        'gatewayStatus': result['status'],
        'outcome': outcome,
        'payment': format_payment_response(payment),
    })


@payment_bp.route('/<transaction_id>/refund-status', methods=['GET'])
@token_required
def refund_status(current_user, transaction_id):
    manager = _manager()
    payment = manager.ledger.find_by_transaction(transaction_id)
    if payment is None:
        raise NotFoundError('Không tìm thấy giao dịch')
    user_id = str(current_user.get('user_id') or current_user.get('_id') or '')
    if payment.get('user_id') != user_id and current_user.get('role') not in ('admin', 'partner'):
        raise ForbiddenError('Bạn không có quyền xem giao dịch này')

    status = manager.gateway_for(payment.get('payment_method')).check_refund_status(transaction_id)
    payment = manager.ledger.find_by_transaction(transaction_id)
    return jsonify({
        'success': True,
        'refundStatus': status,
        'payment': format_payment_response(payment),
    })
