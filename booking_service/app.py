"""
Booking Service - Main Application
Hotel room booking with ZaloPay / VNPay payment
"""
import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .bookings import BookingManager
from .config import Config
from .decorators import internal_api_required
from .errors import BookingError
from .gateway import build_gateways
from .ledger import PaymentLedger
from .model import get_database
from .payment_routes import payment_bp
from .routes import booking_bp
from .voucher_routes import voucher_bp
from .scheduler import cancel_expired_bookings, start_scheduler
from .service_registry import deregister_service, register_service
from .services import NotificationClient

logger = logging.getLogger(__name__)


def create_app(db=None, notifier=None, gateways=None, job_scheduler=None):
    """Build the Flask app around one BookingManager.

    Tests pass their own database, notifier and gateways; production takes
    the defaults.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    CORS(app)

    db = db or get_database()
    notifier = notifier or NotificationClient()
    ledger = PaymentLedger(db)
    if gateways is None:
        gateways = build_gateways(db, ledger, notifier, job_scheduler)
    app.extensions['booking_manager'] = BookingManager(db, gateways, notifier, ledger)

    app.register_blueprint(booking_bp)
    app.register_blueprint(payment_bp)
    app.register_blueprint(voucher_bp)

    @app.errorhandler(BookingError)
    def handle_booking_error(error):
        if error.status_code >= 500:
            logger.error("[BOOKING] %s: %s", error.error_code, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({'success': False, 'message': error.description}), error.code
        logger.exception("[BOOKING] Unhandled error")
        return jsonify({'success': False, 'message': 'Lỗi hệ thống', 'errorCode': 'INTERNAL_ERROR'}), 500

    # ============== Health Check ==============

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({'status': 'healthy', 'service': Config.SERVICE_NAME}), 200

    # ============== Internal APIs ==============

    @app.route('/internal/jobs/expire-bookings', methods=['POST'])
    @internal_api_required
    def run_expiry_job():
        summary = cancel_expired_bookings(app.extensions['booking_manager'])
        return jsonify({'success': True, **summary})

    return app


def main():
    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    job_scheduler = None
    if Config.SCHEDULER_ENABLED:
        job_scheduler = BackgroundScheduler()

    app = create_app(job_scheduler=job_scheduler)
    register_service()
    atexit.register(deregister_service)

    if job_scheduler is not None:
        start_scheduler(app.extensions['booking_manager'], job_scheduler)
        atexit.register(lambda: job_scheduler.shutdown(wait=False))

    logger.info("%s starting on port %s", Config.SERVICE_NAME, Config.SERVICE_PORT)
    app.run(host='0.0.0.0', port=Config.SERVICE_PORT, debug=Config.DEBUG, use_reloader=False)


if __name__ == '__main__':
    main()
