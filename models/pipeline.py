from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, ForeignKey, BigInteger, Boolean, Float
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, StepKind


class Pipeline(Base):
    """
    A named, ordered sequence of transformation steps.

    Steps run strictly in step_index order; a step may reference datasets
    by id, by name (latest version) or by an earlier step's output name.
    """
    __tablename__ = "pipelines"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_by = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    steps = relationship(
        "PipelineStep",
        back_populates="pipeline",
        order_by="PipelineStep.step_index",
        cascade="all, delete-orphan",
    )


class PipelineStep(Base):
    """One SQL query or script step of a pipeline."""
    __tablename__ = "pipeline_steps"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_id = Column(BigInteger, ForeignKey("pipelines.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)

    name = Column(String(255), nullable=False)
    kind = Column(Enum(StepKind), nullable=False)
    source = Column(Text, nullable=False)  # query text or script body

    input_refs = Column(JSONType, nullable=False)  # list of dataset ids / names / step outputs
    output_name = Column(String(255), nullable=False)

    timeout_seconds = Column(Float, nullable=True)  # None -> settings.STEP_TIMEOUT_SECONDS

    pipeline = relationship("Pipeline", back_populates="steps")

    __table_args__ = (
        Index("idx_pipeline_step_order", "pipeline_id", "step_index", unique=True),
    )
