"""Audit log model."""
from sqlalchemy import JSON, Column, DateTime, Integer, String, event
from sqlalchemy.orm import Mapper

from warden.clock import utcnow
from warden.database import Base


class AuditLogEntry(Base):
    """Append-only record of a security-relevant event."""

    __tablename__ = "audit_log"

    # Monotonic: breaks ties between entries written in the same instant.
    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(50), nullable=False)
    actor_id = Column(String(36), index=True)
    target_user_id = Column(String(36), index=True)
    role_id = Column(String(36), index=True)
    permission_id = Column(String(36))
    ip_address = Column(String(45))
    user_agent = Column(String(255))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow, index=True)


@event.listens_for(AuditLogEntry, "before_update")
@event.listens_for(AuditLogEntry, "before_delete")
def _reject_mutation(mapper: Mapper, connection, target: AuditLogEntry) -> None:
    raise RuntimeError(f"Audit log entry {target.id} is write-once")
