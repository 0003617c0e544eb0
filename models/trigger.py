from sqlalchemy import Column, String, Enum, DateTime, Text, Index, ForeignKey, BigInteger, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, TriggerType, TriggerEventType


class PipelineTrigger(Base):
    """
    Starts runs of a pipeline without a user request.

    config by trigger_type:
    - SCHEDULE: cron (5-field crontab), timezone, concurrency_policy ("skip" | "allow")
    - PIPELINE_CHAIN: upstream_pipeline_id, condition ("success" | "failure" | "any")
    - API: token_hash (sha256 of the token handed out once at creation)

    Fired runs execute as created_by.
    """
    __tablename__ = "pipeline_triggers"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    pipeline_id = Column(BigInteger, ForeignKey("pipelines.id"), nullable=False, index=True)
    trigger_type = Column(Enum(TriggerType), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True, index=True)

    config = Column(JSONType, nullable=False, default=dict)
    trigger_state = Column(JSONType, nullable=False, default=dict)  # last_fired_at, last_execution_id

    created_by = Column(BigInteger, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    events = relationship(
        "TriggerEvent",
        back_populates="trigger",
        cascade="all, delete-orphan",
    )


class TriggerEvent(Base):
    """One firing attempt of a trigger: fired (with its execution), skipped or errored."""
    __tablename__ = "trigger_events"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    trigger_id = Column(BigInteger, ForeignKey("pipeline_triggers.id"), nullable=False, index=True)
    pipeline_id = Column(BigInteger, nullable=False)
    execution_id = Column(BigInteger, nullable=True)

    event_type = Column(Enum(TriggerEventType), nullable=False)
    detail = Column(JSONType, nullable=True)  # reason / error / upstream_execution_id

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    trigger = relationship("PipelineTrigger", back_populates="events")

    __table_args__ = (
        Index("idx_trigger_event_pipeline_created", "pipeline_id", "created_at"),
    )
