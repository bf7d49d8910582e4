"""
Core Celery Tasks

- Outbox dispatch (events written by billing and enrollment services)
"""
import logging
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(name='core.tasks.dispatch_outbox_events')
def dispatch_outbox_events():
    """
    Deliver pending outbox events to their registered handlers.
    This task should run every minute via Celery Beat.
    """
    from core.services.outbox import OutboxService

    result = OutboxService().dispatch_pending()
    if result['processed']:
        logger.info(
            f"Outbox dispatch: {result['dispatched']} dispatched, "
            f"{result['failed']} failed of {result['processed']}"
        )
    return result
