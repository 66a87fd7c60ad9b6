from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PipelineSnapshot(Base):
    """Latest PipelineState document for one state key."""

    __tablename__ = "pipeline_snapshots"

    state_key = Column(String, primary_key=True)
    overall_status = Column(String, nullable=False, default="pending")
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
