from celery import current_app

from core.config import settings
from core.db import db_session
from core.logging import get_logger
from services.gateway import build_gateways
from services.lifecycle import OrderLifecycleService

logger = get_logger(__name__)


@current_app.task(bind=True, max_retries=3)
def reconcile_stale_payments(self, older_than_minutes: int | None = None):
    """
    Periodic sweep over Khalti sessions that were started but never verified.
    Individual lookup failures are counted, not retried; the next run picks
    the orders up again.
    """
    try:
        with db_session() as db:
            lifecycle = OrderLifecycleService(db, settings, build_gateways(settings))
            return lifecycle.reconcile_stale_payments(older_than_minutes)
    except Exception as exc:
        logger.exception("reconcile_task_failed", retries=self.request.retries)
        countdown = min(2 ** self.request.retries * 30, 300)
        raise self.retry(exc=exc, countdown=countdown)
