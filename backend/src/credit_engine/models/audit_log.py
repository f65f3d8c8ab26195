"""Audit log model for tracking purchase lifecycle and staff actions."""
from sqlalchemy import JSON, Column, String, Uuid

from credit_engine.models.base import Base


class AuditLog(Base):
    """
    Audit trail entry.

    Records purchase transitions, settlement errors and staff reviews.
    """

    __tablename__ = "audit_logs"

    entity_type = Column(String, nullable=False, index=True)  # purchase, payment_proof, coupon, subscription
    entity_id = Column(Uuid, nullable=False, index=True)
    action = Column(String, nullable=False)  # create, transition, error, review
    user_id = Column(String, nullable=True)  # User who performed action
    changes = Column(JSON, nullable=False, default=dict)  # {field: {old: X, new: Y}} or error details
    request_id = Column(String, nullable=True)  # Correlation ID from request

    def __repr__(self) -> str:
        """String representation."""
        return f"<AuditLog(entity_type={self.entity_type}, entity_id={self.entity_id}, action={self.action})>"
