"""
Program Service

Class programs and their ordered session templates.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from django.db import transaction

from core.exceptions import NotFoundError, ValidationFailedError, issue
from core.services.audit import AuditService
from core.services.idempotency import IdempotencyStore
from classes.models import ClassProgram, ClassProgramSessionTemplate

logger = logging.getLogger(__name__)

ACTION_KEY = 'classes.program.create'
SESSION_TYPES = [choice[0] for choice in ClassProgramSessionTemplate.SESSION_TYPES]


@dataclass
class SessionTemplateInput:
    index: int
    session_type: str = 'LECTURE'
    title: str = ''
    default_duration_minutes: Optional[int] = None


def validate_session_templates(items: List[SessionTemplateInput]):
    issues = []
    seen = set()
    for position, item in enumerate(items):
        if not isinstance(item.index, int) or item.index < 0:
            issues.append(issue('Index must be a non-negative integer', f"items.{position}.index"))
        elif item.index in seen:
            issues.append(issue(f"Duplicate index {item.index}", f"items.{position}.index"))
        seen.add(item.index)
        if item.session_type not in SESSION_TYPES:
            issues.append(issue(f"Unknown session type {item.session_type!r}", f"items.{position}.type"))
        if item.default_duration_minutes is not None and item.default_duration_minutes <= 0:
            issues.append(issue('Duration must be positive', f"items.{position}.defaultDurationMin"))
    if issues:
        raise ValidationFailedError('Invalid session templates', issues=issues)


class ProgramService:

    def __init__(self, workspace, user=None, idempotency=None, audit=None):
        self.workspace = workspace
        self.user = user
        self.idempotency = idempotency or IdempotencyStore()
        self.audit = audit or AuditService()

    def get_program(self, program_id) -> ClassProgram:
        program = ClassProgram.objects.filter(
            workspace=self.workspace,
            pk=program_id,
            is_deleted=False,
        ).first()
        if program is None:
            raise NotFoundError(f"Program {program_id} not found", code='Classes:ProgramNotFound')
        return program

    def create_program(self, title: str, description: str = '', level_tag: str = '',
                       expected_sessions_count: int = None, default_timezone: str = '',
                       session_templates: Iterable[SessionTemplateInput] = (),
                       idempotency_key: str = None) -> ClassProgram:
        title = (title or '').strip()
        if not title:
            raise ValidationFailedError('Program title is required', issues=[issue('Title is required', 'title')])

        if idempotency_key:
            cached = self.idempotency.get(ACTION_KEY, self.workspace.tenant, idempotency_key)
            if cached:
                return self.get_program(cached['programId'])

        templates = list(session_templates)
        validate_session_templates(templates)

        with transaction.atomic():
            program = ClassProgram.objects.create(
                tenant_id=self.workspace.tenant_id,
                workspace=self.workspace,
                title=title,
                description=description,
                level_tag=level_tag,
                expected_sessions_count=expected_sessions_count,
                default_timezone=default_timezone,
                created_by=self.user,
            )
            self._write_templates(program, templates)

        logger.info(f"Created class program {program.title} ({len(templates)} session templates)")
        self.audit.log(
            'classes.program.created', 'ClassProgram', program.pk,
            tenant=self.workspace.tenant, user=self.user,
            changes={'title': title},
        )
        if idempotency_key:
            self.idempotency.store(ACTION_KEY, self.workspace.tenant, idempotency_key, {'programId': str(program.pk)})
        return program

    def replace_session_templates(self, program_id, items: Iterable[SessionTemplateInput]) -> List[ClassProgramSessionTemplate]:
        program = self.get_program(program_id)
        items = list(items)
        validate_session_templates(items)

        with transaction.atomic():
            ClassProgramSessionTemplate.objects.filter(program=program).delete()
            templates = self._write_templates(program, items)

        self.audit.log(
            'classes.program.session-templates.replaced', 'ClassProgram', program.pk,
            tenant=self.workspace.tenant, user=self.user,
            changes={'count': len(templates)},
        )
        return templates

    def _write_templates(self, program, items: List[SessionTemplateInput]) -> List[ClassProgramSessionTemplate]:
        return [
            ClassProgramSessionTemplate.objects.create(
                tenant_id=self.workspace.tenant_id,
                workspace=self.workspace,
                program=program,
                index=item.index,
                session_type=item.session_type,
                title=item.title or '',
                default_duration_minutes=item.default_duration_minutes,
                created_by=self.user,
            )
            for item in sorted(items, key=lambda item: item.index)
        ]
