"""
Outbox Service

Records events for asynchronous publication. Handlers are registered per event
type and invoked by core.tasks.dispatch_outbox_events.
"""
import logging
from datetime import timedelta
from typing import Callable, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.models import OutboxEvent

logger = logging.getLogger(__name__)


_HANDLERS: Dict[str, Callable[[OutboxEvent], None]] = {}


def register_handler(event_type: str):
    """Decorator registering a dispatcher handler for an event type."""
    def decorator(func):
        _HANDLERS[event_type] = func
        return func
    return decorator


def get_handler(event_type: str) -> Optional[Callable[[OutboxEvent], None]]:
    return _HANDLERS.get(event_type)


class OutboxService:
    """Writes events to the outbox table."""

    def enqueue(self, event_type: str, payload: dict, tenant=None) -> OutboxEvent:
        event = OutboxEvent.objects.create(
            tenant=tenant,
            event_type=event_type,
            payload=payload,
        )
        logger.debug(f"Enqueued outbox event {event_type} ({event.id})")
        return event

    def dispatch_pending(self, limit: int = None) -> Dict[str, int]:
        """
        Deliver pending events to their handlers.
        The batch is claimed with row locks, skipping rows another worker holds.
        Events without a handler are marked dispatched so they don't pile up.
        """
        limit = limit or settings.OUTBOX_BATCH_SIZE
        max_attempts = settings.OUTBOX_MAX_ATTEMPTS
        now = timezone.now()

        dispatched = 0
        failed = 0
        with transaction.atomic():
            pending = list(
                OutboxEvent.objects.select_for_update(skip_locked=True).filter(
                    status='PENDING',
                    available_at__lte=now,
                ).order_by('created_at')[:limit]
            )

            for event in pending:
                handler = get_handler(event.event_type)
                if handler is None:
                    logger.debug(f"No handler for {event.event_type}, marking dispatched")
                    event.status = 'DISPATCHED'
                    event.dispatched_at = now
                    event.save(update_fields=['status', 'dispatched_at'])
                    dispatched += 1
                    continue

                try:
                    # savepoint: a failing handler's writes roll back alone
                    with transaction.atomic():
                        handler(event)
                except Exception as e:
                    logger.exception(f"Outbox handler failed for event {event.id} ({event.event_type})")
                    event.attempts += 1
                    event.last_error = str(e)[:500]
                    if event.attempts >= max_attempts:
                        event.status = 'FAILED'
                    else:
                        event.available_at = now + timedelta(minutes=5 * event.attempts)
                    event.save(update_fields=['attempts', 'last_error', 'status', 'available_at'])
                    failed += 1
                    continue

                event.status = 'DISPATCHED'
                event.dispatched_at = now
                event.attempts += 1
                event.save(update_fields=['status', 'dispatched_at', 'attempts'])
                dispatched += 1

        return {
            'processed': len(pending),
            'dispatched': dispatched,
            'failed': failed,
        }
