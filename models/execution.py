from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, ExecutionStatus, StepStatus


class PipelineExecution(Base):
    """
    Tracks one run of a pipeline.

    Purpose:
    - Audit trail of all pipeline runs
    - Per-step results, including the failing step's error detail
    - Link to the async job that reports progress

    Status is monotonic: once SUCCEEDED, FAILED or CANCELLED no further
    step results are appended.
    """
    __tablename__ = "pipeline_executions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_id = Column(BigInteger, ForeignKey("pipelines.id"), nullable=False, index=True)
    job_id = Column(String(36), nullable=True, index=True)

    status = Column(Enum(ExecutionStatus), default=ExecutionStatus.PENDING, nullable=False, index=True)
    executed_by = Column(BigInteger, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    failed_step_index = Column(Integer, nullable=True)

    # Timestamps
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    pipeline = relationship("Pipeline")
    step_results = relationship(
        "StepExecution",
        back_populates="execution",
        order_by="StepExecution.step_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_execution_status_created", "status", "created_at"),
    )


class StepExecution(Base):
    """Result of one step within a pipeline execution."""
    __tablename__ = "step_executions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    execution_id = Column(BigInteger, ForeignKey("pipeline_executions.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)
    step_name = Column(String(255), nullable=False)

    status = Column(Enum(StepStatus), default=StepStatus.RUNNING, nullable=False)
    output_dataset_id = Column(BigInteger, ForeignKey("datasets.id"), nullable=True)
    row_count = Column(BigInteger, nullable=True)

    error_message = Column(Text, nullable=True)
    error_detail = Column(JSONType, nullable=True)
    log = Column(Text, nullable=True)  # captured script output

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    execution = relationship("PipelineExecution", back_populates="step_results")

    __table_args__ = (
        Index("idx_step_execution_order", "execution_id", "step_index", unique=True),
    )
