"""
Common mixins for billing models
"""
from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.sql import func


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AuditMixin:
    """Mixin that records which user created or last touched a row"""

    created_by_user_id = Column(Uuid(as_uuid=True), nullable=True)
    updated_by_user_id = Column(Uuid(as_uuid=True), nullable=True)


class SoftDeleteMixin:
    """Mixin for soft delete functionality"""

    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self):
        return self.deleted_at is not None
