import logging
import os
import time

import consul

from .config import Config

logger = logging.getLogger(__name__)


def _service_id():
    return os.getenv('SERVICE_ID') or f"{Config.SERVICE_NAME}-{Config.SERVICE_PORT}"


def register_service(max_retries=10, wait_seconds=2):
    """Register service with Consul. Returns True when registered."""
    client = None
    for attempt in range(max_retries):
        try:
            client = consul.Consul(host=Config.CONSUL_HOST, port=Config.CONSUL_PORT)
            client.agent.self()
            break
        except Exception as e:
            client = None
            if attempt < max_retries - 1:
                logger.info("[CONSUL] Waiting for Consul... (attempt %s/%s)", attempt + 1, max_retries)
                time.sleep(wait_seconds)
            else:
                logger.error("[CONSUL] Cannot connect to Consul: %s", e)
    if client is None:
        return False

    service_address = os.getenv('SERVICE_ADDRESS') or Config.SERVICE_NAME
    service_id = _service_id()
    health_url = f"http://{service_address}:{Config.SERVICE_PORT}/health"
    try:
        try:
            client.agent.service.deregister(service_id)
        except Exception:
            logger.debug("[CONSUL] No previous registration for %s", service_id)

        client.agent.service.register(
            Config.SERVICE_NAME,
            service_id=service_id,
            address=service_address,
            port=Config.SERVICE_PORT,
            check={
                "HTTP": health_url,
                "Interval": "10s",
                "Timeout": "5s",
                "DeregisterCriticalServiceAfter": "1m",
            },
        )
    except Exception:
        logger.exception("[CONSUL] Error registering %s", Config.SERVICE_NAME)
        return False

    logger.info("[CONSUL] Registered %s at %s:%s (health: %s)",
                Config.SERVICE_NAME, service_address, Config.SERVICE_PORT, health_url)
    return True


def deregister_service():
    try:
        client = consul.Consul(host=Config.CONSUL_HOST, port=Config.CONSUL_PORT)
        client.agent.service.deregister(_service_id())
        logger.info("[CONSUL] Deregistered %s", _service_id())
    except Exception as e:
        logger.warning("[CONSUL] Deregister failed: %s", e)
