"""
AdminAction model - append-only audit log of privileged operations.

Written in the same database transaction as the change it describes, so a
refund or revocation is never committed without its audit row.
"""

from sqlalchemy import Column, String, JSON

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid


class AdminActionType:
    REFUND_PROCESSED = "refund_processed"
    REFUND_FINALIZED_BY_SWEEP = "refund_finalized_by_sweep"
    ACCESS_GRANTED = "access_granted"
    ACCESS_EXTENDED = "access_extended"
    ACCESS_REVOKED = "access_revoked"
    REFUND_REQUEST_APPROVED = "refund_request_approved"
    REFUND_REQUEST_REJECTED = "refund_request_rejected"


class AdminAction(Base, TimestampMixin):
    __tablename__ = "admin_actions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    admin_id = Column(String(36), nullable=True, comment="Null for automated jobs")
    action = Column(String(64), nullable=False, index=True)
    target_type = Column(String(64), nullable=False)
    target_id = Column(String(36), nullable=False, index=True)
    details = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AdminAction(action={self.action}, target_type={self.target_type}, "
            f"target_id={self.target_id})>"
        )
