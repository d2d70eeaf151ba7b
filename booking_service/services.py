# Booking Service - External Service Calls
import logging
from functools import wraps

import requests

from .config import Config

logger = logging.getLogger(__name__)

FALLBACK_PORTS = {
    'notification-service': 5010,
    'user-service': 5003,
}


def get_service_url(service_name):
    # Get service URL from Consul, falling back to the compose hostname
    try:
        consul_url = f"http://{Config.CONSUL_HOST}:{Config.CONSUL_PORT}/v1/catalog/service/{service_name}"
        response = requests.get(consul_url, timeout=5)
        if response.ok and response.json():
            service = response.json()[0]
            host = service.get('ServiceAddress') or service.get('Address') or service_name
            return f"http://{host}:{service['ServicePort']}"
    except Exception as e:
        logger.warning("[CONSUL] Lookup for %s failed: %s", service_name, e)

    return f"http://{service_name}:{FALLBACK_PORTS.get(service_name, 5001)}"


class NotificationClient:
    """Best-effort delivery through notification-service.

    Every method returns a bool and never raises: a booking or payment must
    not fail because a message could not be sent.
    """

    def __init__(self, service_name='notification-service', timeout=5):
        self.service_name = service_name
        self.timeout = timeout

    def _post(self, path, payload):
        try:
            base_url = get_service_url(self.service_name)
            response = requests.post(
                f"{base_url}{path}",
                json=payload,
                headers={'X-Internal-Api-Key': Config.INTERNAL_API_KEY, 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
            if not response.ok:
                logger.warning("[NOTIFY] %s rejected: %s %s", path, response.status_code, response.text)
            return response.ok
        except requests.RequestException as exc:
            logger.warning("[NOTIFY] %s failed: %s", path, exc)
            return False

    def notify(self, user_id, title, message, notification_type='booking', metadata=None):
        if not user_id:
            return False
        return self._post('/api/notifications', {
            'user_id': str(user_id),
            'title': title,
            'message': message,
            'type': notification_type,
            'metadata': metadata or {},
        })

    def send_email(self, to, subject, html):
        if not to:
            return False
        return self._post('/api/notifications/email', {'to': to, 'subject': subject, 'html': html})


def best_effort(fn):
    # Notification side effects: log failures, never propagate them
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("[NOTIFY] %s failed", fn.__name__)
            return False

    return wrapper
