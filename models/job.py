from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, BigInteger, Boolean
from datetime import datetime
from models.base import Base, JSONType, JobStatus


class AsyncJob(Base):
    """
    Long-lived asynchronous job record shared by imports and pipeline runs.

    Invariants:
    - progress is in [0, 100] and never decreases
    - progress == 100 iff status is SUCCEEDED (stage "completed")
    - error_message is set iff status is FAILED
    - exactly one terminal transition per job
    """
    __tablename__ = "async_jobs"

    job_id = Column(String(36), primary_key=True)
    job_type = Column(String(50), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=True, index=True)

    # Optional resource the job works on ("dataset", "pipeline")
    resource = Column(String(50), nullable=True)
    resource_id = Column(String(100), nullable=True)

    # Progress
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    stage = Column(String(100), nullable=False, default="queued")
    progress = Column(Integer, nullable=False, default=0)
    job_metadata = Column("metadata", JSONType, nullable=True)

    # Failure / cancellation
    error_message = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_job_status_updated", "status", "updated_at"),
        Index("idx_job_resource", "job_type", "resource", "resource_id"),
    )
