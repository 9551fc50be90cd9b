import logging
from celery import Celery

from . import config

logger = logging.getLogger(__name__)

# Celery App Config
celery = Celery(__name__, broker=config.CELERY_BROKER_URL, backend=config.CELERY_BROKER_URL)

@celery.task(name="notify_order_placed")
def notify_order_placed(store_name: str, order_id: int, total: float, whatsapp_url: str):
    # the relay itself happens in the customer's browser; this only records it
    logger.info("Order #%s placed at %s, total %.2f: %s", order_id, store_name, total, whatsapp_url)
    return True
