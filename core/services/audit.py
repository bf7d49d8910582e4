"""
Audit Service

Side-channel audit trail. A failing audit write is logged and never changes
the outcome of the action being audited.
"""
import logging

from django.db import DatabaseError, transaction

from core.models import AuditLog

logger = logging.getLogger(__name__)


class AuditService:

    def log(self, action: str, model_name: str, object_id, tenant=None, user=None, changes: dict = None):
        try:
            with transaction.atomic():
                AuditLog.objects.create(
                    tenant=tenant,
                    user=user,
                    action=action,
                    model_name=model_name,
                    object_id=str(object_id),
                    changes=changes or {},
                )
        except DatabaseError:
            logger.exception(f"Failed to write audit entry {action} for {model_name}:{object_id}")
