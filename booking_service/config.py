"""
Booking Service Configuration
"""
import os


def _derive_vnpay_api_url(pay_url):
    # QueryDR/Refund endpoint lives next to the hosted payment page
    if not pay_url:
        return ''
    return pay_url.replace('/paymentv2/vpcpay.html', '/merchant_webapi/api/transaction')


class Config:
    """Application configuration"""

    # MongoDB
    MONGO_URI = os.getenv('MONGO_URI', 'mongodb://localhost:27017/hotel_booking_db')
    DB_NAME = os.getenv('DB_NAME', 'hotel_booking_db')

    # Service Info
    SERVICE_NAME = 'booking-service'
    SERVICE_PORT = int(os.getenv('SERVICE_PORT', '5005'))

    # JWT
    JWT_SECRET = os.getenv('JWT_SECRET', 'your-super-secret-key-change-this')

    # Consul
    CONSUL_HOST = os.getenv('CONSUL_HOST', 'localhost')
    CONSUL_PORT = int(os.getenv('CONSUL_PORT', '8500'))

    # Internal API
    INTERNAL_API_KEY = os.getenv('INTERNAL_API_KEY', 'internal-secret-key')

    # Debug / logging
    DEBUG = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Frontend pages the gateways redirect the browser to
    CLIENT_URL = os.getenv('CLIENT_URL', 'http://localhost:3000').rstrip('/')

    # Hotel local time (Vietnam, no DST)
    TIMEZONE_OFFSET_HOURS = int(os.getenv('TIMEZONE_OFFSET_HOURS', '7'))
    CHECK_IN_HOUR = 14
    CHECK_OUT_HOUR = 12

    # Booking policy
    CANCELLATION_LOCKOUT_HOURS = int(os.getenv('CANCELLATION_LOCKOUT_HOURS', '24'))
    PAYMENT_WINDOW_HOURS = int(os.getenv('PAYMENT_WINDOW_HOURS', '24'))
    MAX_PAYMENT_RETRIES = int(os.getenv('MAX_PAYMENT_RETRIES', '3'))
    RETRY_WINDOW_HOURS = int(os.getenv('RETRY_WINDOW_HOURS', '48'))
    REFUND_RECHECK_SECONDS = int(os.getenv('REFUND_RECHECK_SECONDS', '60'))

    # Scheduler
    SCHEDULER_ENABLED = os.getenv('SCHEDULER_ENABLED', 'true').lower() == 'true'
    EXPIRY_JOB_INTERVAL_MINUTES = int(os.getenv('EXPIRY_JOB_INTERVAL_MINUTES', '5'))
    JOB_LOCK_SECONDS = int(os.getenv('JOB_LOCK_SECONDS', '300'))

    # Outbound gateway calls
    GATEWAY_TIMEOUT = int(os.getenv('GATEWAY_TIMEOUT', '15'))

    # VNpay configuration (Sandbox for testing)
    VNPAY_TMN_CODE = os.getenv('VNPAY_TMN_CODE', '729I87YR').strip()
    VNPAY_HASH_SECRET = os.getenv('VNPAY_HASH_SECRET', 'ZKPI2R2IFEA4VIA1WMCMI65XQUMQHTWT').strip()
    VNPAY_URL = os.getenv('VNPAY_URL', 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html').strip()
    VNPAY_API_URL = os.getenv('VNPAY_API_URL', _derive_vnpay_api_url(VNPAY_URL)).strip()
    VNPAY_RETURN_URL = os.getenv('VNPAY_RETURN_URL', 'http://localhost:5005/api/payments/vnpay/return').strip()
    # Optional: IPN callback URL (public, e.g. ngrok). If set, payment URL will include vnp_IpnUrl.
    VNPAY_IPN_URL = os.getenv('VNPAY_IPN_URL', '').strip()

    # ZaloPay configuration (Sandbox app from the ZaloPay docs)
    ZALOPAY_APP_ID = os.getenv('ZALOPAY_APP_ID', '2553').strip()
    ZALOPAY_KEY1 = os.getenv('ZALOPAY_KEY1', 'PcY4iZIKFCIdgZvA6ueMcMHHUbRLYjPL').strip()
    ZALOPAY_KEY2 = os.getenv('ZALOPAY_KEY2', 'kLtgPl8HHhfvMuDHPwKfgfsY4Ydm9eIz').strip()
    ZALOPAY_ENDPOINT = os.getenv('ZALOPAY_ENDPOINT', 'https://sb-openapi.zalopay.vn/v2').rstrip('/')
    ZALOPAY_CALLBACK_URL = os.getenv(
        'ZALOPAY_CALLBACK_URL', 'http://localhost:5005/api/payments/zalopay/callback'
    ).strip()
    ZALOPAY_REDIRECT_URL = os.getenv(
        'ZALOPAY_REDIRECT_URL', 'http://localhost:5005/api/payments/zalopay/return'
    ).strip()

    # Booking Status Constants
    STATUS_PENDING = 'pending'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_COMPLETED = 'completed'
    BOOKING_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED}
    ACTIVE_BOOKING_STATUSES = (STATUS_PENDING, STATUS_CONFIRMED)

    PAYMENT_METHODS = {'zalopay', 'vnpay', 'credit_card', 'paypal'}
    DEFAULT_PAYMENT_METHOD = 'zalopay'
