"""
Core models for the Academy Billing project
Contains base classes, User model, and the idempotency, outbox and audit stores
"""
import uuid
from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.db import models
from django.utils import timezone


class UserManager(BaseUserManager):
    """Custom user manager for email-based authentication"""

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError('The Email field must be set')
        email = self.normalize_email(email)
        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        return self.create_user(email, password, **extra_fields)


class User(AbstractUser):
    """
    Custom User model with email as primary identifier
    """
    username = None  # Remove username field
    email = models.EmailField('email address', unique=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['first_name', 'last_name']

    objects = UserManager()

    class Meta:
        verbose_name = 'user'
        verbose_name_plural = 'users'

    def __str__(self):
        return self.email


class AuditedModel(models.Model):
    """
    Abstract base class for all models requiring audit trail
    Provides created/updated timestamps and soft delete functionality
    """
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    created_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='%(class)s_created',
        null=True, blank=True
    )
    updated_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name='%(class)s_updated',
        null=True, blank=True
    )

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        User,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name='%(class)s_deleted'
    )

    class Meta:
        abstract = True

    def soft_delete(self, user=None):
        """Soft delete the record"""
        self.is_deleted = True
        self.deleted_at = timezone.now()
        self.deleted_by = user
        self.save()


class IdempotencyRecord(models.Model):
    """
    Cached response of a mutating action, keyed by (action, tenant, key).
    A repeated request with the same key returns the stored response.
    """
    action_key = models.CharField(max_length=120)
    tenant = models.ForeignKey(
        'tenants.Tenant',
        null=True, blank=True,
        on_delete=models.CASCADE,
        related_name='idempotency_records'
    )
    key = models.CharField(max_length=255)
    response = models.JSONField(default=dict)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['action_key', 'tenant', 'key'],
                name='unique_idempotency_record'
            ),
        ]

    def __str__(self):
        return f"{self.action_key} - {self.key}"


class OutboxEvent(models.Model):
    """
    Event waiting to be published by the outbox dispatcher.
    Written in the same request as the business change it describes.
    """
    STATUS_CHOICES = [
        ('PENDING', 'Pending'),
        ('DISPATCHED', 'Dispatched'),
        ('FAILED', 'Failed'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey(
        'tenants.Tenant',
        null=True, blank=True,
        on_delete=models.CASCADE,
        related_name='outbox_events'
    )
    event_type = models.CharField(max_length=120, db_index=True)
    payload = models.JSONField(default=dict)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='PENDING')
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    available_at = models.DateTimeField(default=timezone.now)
    dispatched_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['status', 'available_at']),
        ]

    def __str__(self):
        return f"{self.event_type} ({self.status})"


class AuditLog(models.Model):
    """
    Detailed audit log for tracking business actions
    """
    tenant = models.ForeignKey(
        'tenants.Tenant',
        null=True, blank=True,
        on_delete=models.CASCADE,
        related_name='audit_logs'
    )
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True, blank=True,
        related_name='audit_logs'
    )
    action = models.CharField(max_length=120)  # e.g. classes.billing.run.created
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=50, blank=True)
    changes = models.JSONField(default=dict, blank=True)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']
        indexes = [
            models.Index(fields=['model_name', 'object_id']),
            models.Index(fields=['action', 'timestamp']),
        ]

    def __str__(self):
        return f"{self.action} - {self.model_name} - {self.timestamp}"
