from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, ForeignKey, BigInteger
from datetime import datetime
from models.base import Base, BigIntPK, JSONType, JobStatus


class DataImport(Base):
    """
    Audit record of one file import.

    dataset_id stays NULL when validation failed and no dataset was created.
    """
    __tablename__ = "data_imports"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False, index=True)
    dataset_id = Column(BigInteger, ForeignKey("datasets.id"), nullable=True, index=True)
    dataset_name = Column(String(255), nullable=False)

    # File
    file_name = Column(String(500), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    file_type = Column(String(20), nullable=True)

    # Outcome
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    total_rows = Column(Integer, default=0)
    success_rows = Column(Integer, default=0)
    error_rows = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)  # row-level errors + warnings

    imported_by = Column(BigInteger, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
