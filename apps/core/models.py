"""
Core models for the HRMS backend.
Provides TimestampedModel with created/updated timestamp fields.
"""
from django.db import models


class TimestampedModel(models.Model):
    """
    Abstract base model with creation and modification timestamps.
    
    Roles and other administrative records inherit from this so that
    listings can be ordered consistently. Records are hard deleted; the
    audit log keeps the history.
    """
    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="Timestamp when the record was created"
    )
    
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when the record was last updated"
    )
    
    class Meta:
        abstract = True
        ordering = ['-created_at']
