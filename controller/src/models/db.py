"""
Database models for run records.

Stage and step rows are insert-only; only the run row is updated as the
run moves through its lifecycle.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Boolean, Float
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(String(36), primary_key=True)
    pipeline = Column(String(255), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    branch = Column(String(255), nullable=False)
    commit_sha = Column(String(40), nullable=False)
    triggered_by = Column(String(255))
    repository = Column(String(255))
    clone_url = Column(String(500))
    status = Column(String(50), default="pending")
    cancelled = Column(Boolean, default=False, nullable=False)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    stages = relationship(
        "StageResultRow",
        back_populates="run",
        order_by="StageResultRow.stage_order",
        cascade="all, delete-orphan",
    )

class StageResultRow(Base):
    __tablename__ = "stage_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("pipeline_runs.id", ondelete="CASCADE"), nullable=False)
    stage_order = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    continue_on_failure = Column(Boolean, default=False, nullable=False)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    run = relationship("PipelineRun", back_populates="stages")
    steps = relationship(
        "StepResultRow",
        back_populates="stage",
        order_by="StepResultRow.step_order",
        cascade="all, delete-orphan",
    )

class StepResultRow(Base):
    __tablename__ = "step_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage_result_id = Column(Integer, ForeignKey("stage_results.id", ondelete="CASCADE"), nullable=False)
    step_order = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False)
    exit_code = Column(Integer)
    expected_exit_code = Column(Integer, default=0, nullable=False)
    timeout = Column(Float)
    required = Column(Boolean, default=True, nullable=False)
    error = Column(Text)
    stdout_ref = Column(String(1000))
    stderr_ref = Column(String(1000))
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    stage = relationship("StageResultRow", back_populates="steps")
