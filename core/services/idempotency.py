"""
Idempotency Store

Persists the response of a mutating action under (action_key, tenant, key) so a
retried request can return the first response instead of repeating the work.
"""
import logging
from typing import Any, Dict, Optional

from django.db import IntegrityError, transaction

from core.models import IdempotencyRecord

logger = logging.getLogger(__name__)


class IdempotencyStore:
    """Django-backed idempotency storage."""

    def get(self, action_key: str, tenant, key: str) -> Optional[Dict[str, Any]]:
        record = IdempotencyRecord.objects.filter(
            action_key=action_key,
            tenant=tenant,
            key=key,
        ).first()
        return record.response if record else None

    def store(self, action_key: str, tenant, key: str, response: Dict[str, Any]) -> None:
        """
        Save the response. Last writer wins; a concurrent insert of the same
        key is ignored because the protected side effects are already unique.
        """
        try:
            with transaction.atomic():
                IdempotencyRecord.objects.update_or_create(
                    action_key=action_key,
                    tenant=tenant,
                    key=key,
                    defaults={'response': response},
                )
        except IntegrityError:
            logger.info(f"Idempotency record {action_key}:{key} written concurrently, keeping existing")
