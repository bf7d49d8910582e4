"""
Clients app models
Students and payers (parents, companies) billed by the academy
"""
import uuid
from django.db import models
from tenants.models import TenantAwareModel


class Client(TenantAwareModel):
    """
    A person or organisation that attends classes and/or pays for them.
    """
    KIND_CHOICES = [
        ('INDIVIDUAL', 'Individual'),
        ('ORGANIZATION', 'Organization'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default='INDIVIDUAL')
    display_name = models.CharField(max_length=200)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=20, blank=True)
    billing_address = models.TextField(blank=True)

    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['display_name']

    def __str__(self):
        return self.display_name
