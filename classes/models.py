"""
Classes app models
Class groups, sessions, enrollments, attendance and class billing
(monthly billing runs, enrollment billing plans, invoice links)
"""
import uuid
from django.db import models
from simple_history.models import HistoricalRecords
from tenants.models import TenantAwareModel


class ClassProgram(TenantAwareModel):
    """
    Reusable curriculum a class group can follow
    E.g., "German A1 - 12 sessions"
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    level_tag = models.CharField(max_length=50, blank=True)
    expected_sessions_count = models.PositiveIntegerField(null=True, blank=True)
    default_timezone = models.CharField(max_length=64, blank=True)

    class Meta:
        ordering = ['title']

    def __str__(self):
        return self.title


class ClassProgramSessionTemplate(TenantAwareModel):
    """
    Ordered session outline of a program
    """
    SESSION_TYPES = [
        ('LECTURE', 'Lecture'),
        ('LAB', 'Lab'),
        ('OFFICE_HOURS', 'Office Hours'),
        ('REVIEW', 'Review'),
        ('DEMO_DAY', 'Demo Day'),
    ]

    program = models.ForeignKey(
        ClassProgram,
        on_delete=models.CASCADE,
        related_name='session_templates'
    )
    index = models.PositiveIntegerField()
    title = models.CharField(max_length=200, blank=True)
    default_duration_minutes = models.PositiveIntegerField(null=True, blank=True)
    session_type = models.CharField(max_length=20, choices=SESSION_TYPES, default='LECTURE')

    class Meta:
        ordering = ['program', 'index']
        constraints = [
            models.UniqueConstraint(
                fields=['program', 'index'],
                name='unique_program_template_index'
            ),
        ]

    def __str__(self):
        return f"{self.program.title} #{self.index}"


class ClassGroup(TenantAwareModel):
    """
    A class that meets repeatedly and is billed per session
    """
    STATUS_CHOICES = [
        ('ACTIVE', 'Active'),
        ('ARCHIVED', 'Archived'),
    ]

    KIND_CHOICES = [
        ('COHORT', 'Cohort'),
        ('DROP_IN', 'Drop-in'),
        ('OFFICE_HOURS', 'Office Hours'),
        ('WORKSHOP', 'Workshop'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    subject = models.CharField(max_length=100, blank=True)
    level = models.CharField(max_length=50, blank=True)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default='COHORT')
    program = models.ForeignKey(
        ClassProgram,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name='class_groups'
    )

    # Pricing (minor currency units)
    default_price_per_session = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3)

    # Schedule
    schedule_pattern = models.JSONField(null=True, blank=True)
    default_session_duration_minutes = models.PositiveIntegerField(default=60)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='ACTIVE')

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class ClassSession(TenantAwareModel):
    """
    One occurrence of a class group. Identified by its start instant.
    """
    STATUS_CHOICES = [
        ('PLANNED', 'Planned'),
        ('DONE', 'Done'),
        ('CANCELLED', 'Cancelled'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    class_group = models.ForeignKey(
        ClassGroup,
        on_delete=models.CASCADE,
        related_name='sessions'
    )
    starts_at = models.DateTimeField()
    ends_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='PLANNED')
    topic = models.CharField(max_length=200, blank=True)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ['starts_at']
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'class_group', 'starts_at'],
                name='unique_class_session_start'
            ),
        ]
        indexes = [
            models.Index(fields=['workspace', 'starts_at']),
        ]

    def __str__(self):
        return f"{self.class_group.name} - {self.starts_at:%Y-%m-%d %H:%M}"


class ClassEnrollment(TenantAwareModel):
    """
    A student's seat in a class group, billed to a payer
    """
    STATUS_CHOICES = [
        ('APPLIED', 'Applied'),
        ('ENROLLED', 'Enrolled'),
        ('DEFERRED', 'Deferred'),
        ('DROPPED', 'Dropped'),
        ('COMPLETED', 'Completed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    class_group = models.ForeignKey(
        ClassGroup,
        on_delete=models.CASCADE,
        related_name='enrollments'
    )
    student = models.ForeignKey(
        'clients.Client',
        on_delete=models.PROTECT,
        related_name='class_enrollments'
    )
    payer = models.ForeignKey(
        'clients.Client',
        on_delete=models.PROTECT,
        related_name='paid_class_enrollments'
    )

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='ENROLLED')
    is_active = models.BooleanField(default=True)
    price_override_per_session = models.PositiveIntegerField(null=True, blank=True)

    # Billable window (inclusive local dates)
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)

    class Meta:
        ordering = ['class_group', 'student']

    def __str__(self):
        return f"{self.student} - {self.class_group}"

    @property
    def price_per_session(self):
        if self.price_override_per_session is not None:
            return self.price_override_per_session
        return self.class_group.default_price_per_session

    def covers(self, day):
        """Whether the enrollment is billable on the given local date"""
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True


class ClassAttendance(TenantAwareModel):
    """
    Attendance of one enrollment at one session
    """
    STATUS_CHOICES = [
        ('PRESENT', 'Present'),
        ('ABSENT', 'Absent'),
        ('MAKEUP', 'Make-up'),
        ('EXCUSED', 'Excused'),
    ]

    BILLABLE_BY_STATUS = {
        'PRESENT': True,
        'MAKEUP': True,
        'ABSENT': False,
        'EXCUSED': False,
    }

    session = models.ForeignKey(
        ClassSession,
        on_delete=models.CASCADE,
        related_name='attendance_records'
    )
    enrollment = models.ForeignKey(
        ClassEnrollment,
        on_delete=models.CASCADE,
        related_name='attendance_records'
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES)
    billable = models.BooleanField(default=True)
    note = models.TextField(blank=True)

    class Meta:
        ordering = ['session', 'enrollment']
        verbose_name_plural = 'Class Attendance Records'
        constraints = [
            models.UniqueConstraint(
                fields=['session', 'enrollment'],
                name='unique_session_enrollment_attendance'
            ),
        ]

    def __str__(self):
        return f"{self.enrollment} - {self.session.starts_at:%Y-%m-%d} - {self.status}"


class ClassesBillingSettings(TenantAwareModel):
    """
    Billing configuration of a workspace's classes module
    """
    MONTH_STRATEGY_CHOICES = [
        ('PREPAID_CURRENT_MONTH', 'Prepaid (current month)'),
        ('ARREARS_PREVIOUS_MONTH', 'Arrears (previous month)'),
    ]

    BASIS_CHOICES = [
        ('SCHEDULED_SESSIONS', 'Scheduled sessions'),
        ('ATTENDED_SESSIONS', 'Attended sessions'),
    ]

    ATTENDANCE_MODE_CHOICES = [
        ('MANUAL', 'Manual'),
        ('AUTO_FULL', 'Automatic (everyone present)'),
    ]

    billing_month_strategy = models.CharField(max_length=30, choices=MONTH_STRATEGY_CHOICES, blank=True)
    billing_basis = models.CharField(max_length=30, choices=BASIS_CHOICES, blank=True)
    attendance_mode = models.CharField(max_length=20, choices=ATTENDANCE_MODE_CHOICES, blank=True)

    history = HistoricalRecords()

    class Meta:
        verbose_name = 'Classes Billing Settings'
        verbose_name_plural = 'Classes Billing Settings'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'workspace'],
                name='unique_classes_billing_settings'
            ),
        ]

    def __str__(self):
        return f"{self.workspace} - {self.billing_month_strategy or 'default'}"


class ClassMonthlyBillingRun(TenantAwareModel):
    """
    Monthly invoicing of class sessions for one workspace
    DRAFT -> INVOICES_CREATED -> LOCKED, with FAILED retryable
    """
    STATUS_CHOICES = [
        ('DRAFT', 'Draft'),
        ('INVOICES_CREATED', 'Invoices Created'),
        ('LOCKED', 'Locked'),
        ('FAILED', 'Failed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    month = models.CharField(max_length=7)  # YYYY-MM
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='DRAFT')

    # Settings frozen at creation
    billing_month_strategy = models.CharField(
        max_length=30, choices=ClassesBillingSettings.MONTH_STRATEGY_CHOICES
    )
    billing_basis = models.CharField(
        max_length=30, choices=ClassesBillingSettings.BASIS_CHOICES
    )

    billing_snapshot = models.JSONField(null=True, blank=True)
    generated_at = models.DateTimeField(null=True, blank=True)

    history = HistoricalRecords()

    class Meta:
        ordering = ['-month']
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'workspace', 'month'],
                name='unique_workspace_billing_month'
            ),
        ]

    def __str__(self):
        return f"{self.workspace} - {self.month} ({self.status})"


class ClassBillingInvoiceLink(TenantAwareModel):
    """
    Durable record that an invoice was created for a billing key.
    The unique idempotency_key is what prevents double invoicing.
    """
    PURPOSE_CHOICES = [
        ('DEPOSIT', 'Deposit'),
        ('INSTALLMENT', 'Installment'),
        ('FINAL', 'Final'),
        ('ADHOC', 'Ad hoc'),
        ('MONTHLY_RUN', 'Monthly Run'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    billing_run = models.ForeignKey(
        ClassMonthlyBillingRun,
        null=True, blank=True,
        on_delete=models.CASCADE,
        related_name='invoice_links'
    )
    enrollment = models.ForeignKey(
        ClassEnrollment,
        null=True, blank=True,
        on_delete=models.CASCADE,
        related_name='invoice_links'
    )
    payer = models.ForeignKey(
        'clients.Client',
        on_delete=models.PROTECT,
        related_name='class_invoice_links'
    )
    class_group = models.ForeignKey(
        ClassGroup,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name='invoice_links'
    )
    invoice = models.ForeignKey(
        'finance.Invoice',
        on_delete=models.PROTECT,
        related_name='class_links'
    )
    purpose = models.CharField(max_length=20, choices=PURPOSE_CHOICES, default='MONTHLY_RUN')
    idempotency_key = models.CharField(max_length=255)

    class Meta:
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'idempotency_key'],
                name='unique_tenant_invoice_link_key'
            ),
        ]

    def __str__(self):
        return self.idempotency_key


class ClassEnrollmentBillingPlan(TenantAwareModel):
    """
    Enrollment-level payment schedule, independent of billing months
    """
    PLAN_TYPES = [
        ('UPFRONT', 'Upfront'),
        ('INSTALLMENTS', 'Installments'),
        ('INVOICE_NET', 'Invoice (net terms)'),
        ('SUBSCRIPTION', 'Subscription'),
    ]

    enrollment = models.OneToOneField(
        ClassEnrollment,
        on_delete=models.CASCADE,
        related_name='billing_plan'
    )
    plan_type = models.CharField(max_length=20, choices=PLAN_TYPES)
    schedule_json = models.JSONField(default=dict)

    class Meta:
        verbose_name = 'Enrollment Billing Plan'

    def __str__(self):
        return f"{self.enrollment} - {self.plan_type}"
