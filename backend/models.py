"""SQLAlchemy models for the sync operation registry"""
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, Index, CheckConstraint, text
from database import Base
from sync_operation import new_operation_id, utc_now


_ACTIVE_STATUS_PREDICATE = "status IN ('pending', 'in_progress')"


# One row per sync attempt; retries get a new row
class SyncOperationRow(Base):
    __tablename__ = 'sync_operations'

    id = Column(String(64), primary_key=True, default=new_operation_id)
    source_contact_id = Column(Integer, nullable=False, index=True)
    target_contact_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default='pending')
    requested_value = Column(String(20), nullable=False)
    source_value = Column(String(20))
    target_value = Column(String(20))
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True))
    retry_count = Column(Integer, nullable=False, default=0)
    retry_of = Column(String(64))
    initiated_by = Column(String(10), nullable=False, default='user')
    result = Column(JSON)
    error = Column(JSON)
    error_code = Column(String(40))
    error_message = Column(Text)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name='ck_sync_operations_status',
        ),
        CheckConstraint("retry_count >= 0", name='ck_sync_operations_retry_count'),
        # Single-flight: at most one active row per source contact
        Index(
            'uq_sync_operations_active_source',
            'source_contact_id',
            unique=True,
            postgresql_where=text(_ACTIVE_STATUS_PREDICATE),
            sqlite_where=text(_ACTIVE_STATUS_PREDICATE),
        ),
        # A failed operation can be retried once; the retry carries the chain on
        Index('uq_sync_operations_retry_of', 'retry_of', unique=True),
        Index('ix_sync_operations_status_completed', 'status', 'completed_at'),
    )
