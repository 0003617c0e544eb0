from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, ForeignKey, BigInteger
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, DatasetKind


class Dataset(Base):
    """
    Metadata for one immutable, materialized dataset version.

    Design:
    - Rows live in the storage backend, addressed by storage_key
    - A dataset is never mutated after creation; re-materializing a name
      inserts a new row with version + 1
    - schema is an ordered list of {"name", "type", "nullable"} entries
    - DERIVED datasets always carry at least one lineage edge
    """
    __tablename__ = "datasets"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Identity
    name = Column(String(255), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    kind = Column(Enum(DatasetKind), nullable=False, index=True)
    description = Column(Text, nullable=True)

    # Shape
    schema = Column(JSONType, nullable=False)
    row_count = Column(BigInteger, nullable=False, default=0)
    column_count = Column(Integer, nullable=False, default=0)

    # Storage
    storage_key = Column(String(512), nullable=False, unique=True)

    created_by = Column(BigInteger, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    parent_edges = relationship(
        "LineageEdge",
        foreign_keys="LineageEdge.derived_dataset_id",
        back_populates="derived_dataset",
    )

    __table_args__ = (
        Index("idx_dataset_name_version", "name", "version", unique=True),
    )


class LineageEdge(Base):
    """
    Append-only producer record: derived dataset <- source dataset,
    produced by one step of one pipeline execution.
    """
    __tablename__ = "lineage_edges"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    derived_dataset_id = Column(BigInteger, ForeignKey("datasets.id"), nullable=False, index=True)
    source_dataset_id = Column(BigInteger, ForeignKey("datasets.id"), nullable=False, index=True)
    execution_id = Column(BigInteger, ForeignKey("pipeline_executions.id"), nullable=False, index=True)
    step_index = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    derived_dataset = relationship(
        "Dataset", foreign_keys=[derived_dataset_id], back_populates="parent_edges"
    )

    __table_args__ = (
        Index("idx_lineage_derived_source", "derived_dataset_id", "source_dataset_id", unique=True),
    )
