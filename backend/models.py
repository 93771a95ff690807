"""
SQLAlchemy ORM models for the run journal and watch change tracking.
"""
import json
from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from database import Base


class PipelineRun(Base):
    """
    One finished pipeline run.
    Per-target outcomes and skipped-record diagnostics are stored as JSON.
    """
    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String(20), nullable=False)  # "success", "partial", "failed", "cancelled"
    channels_total = Column(Integer, default=0, nullable=False)  # Normalized channels fed to targets
    records_skipped = Column(Integer, default=0, nullable=False)  # Malformed provider records
    targets_ok = Column(Integer, default=0, nullable=False)
    targets_failed = Column(Integer, default=0, nullable=False)
    targets_json = Column(Text, nullable=True)  # JSON list of per-target results
    diagnostics_json = Column(Text, nullable=True)  # JSON list of skipped records

    __table_args__ = (
        Index("idx_pipeline_runs_started", started_at.desc()),
        Index("idx_pipeline_runs_status", status),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "status": self.status,
            "channels_total": self.channels_total,
            "records_skipped": self.records_skipped,
            "targets_ok": self.targets_ok,
            "targets_failed": self.targets_failed,
            "targets": json.loads(self.targets_json) if self.targets_json else [],
            "diagnostics": json.loads(self.diagnostics_json) if self.diagnostics_json else [],
        }

    def __repr__(self):
        return f"<PipelineRun(id={self.id}, status={self.status}, targets_ok={self.targets_ok})>"


class WatchSnapshot(Base):
    """
    Titles seen in a watched group of one target at a point in time.
    The newest row per (target, group) is the baseline for the next run.
    """
    __tablename__ = "watch_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_name = Column(String(255), nullable=False)
    group_name = Column(String(255), nullable=False)
    titles_json = Column(Text, nullable=False)  # JSON sorted list of titles
    title_count = Column(Integer, default=0, nullable=False)
    snapshot_time = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_watch_snapshot_target_group", target_name, group_name),
        Index("idx_watch_snapshot_time", snapshot_time.desc()),
    )

    def get_titles(self) -> list[str]:
        return json.loads(self.titles_json) if self.titles_json else []

    def set_titles(self, titles) -> None:
        ordered = sorted(titles)
        self.titles_json = json.dumps(ordered)
        self.title_count = len(ordered)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "target_name": self.target_name,
            "group_name": self.group_name,
            "titles": self.get_titles(),
            "title_count": self.title_count,
            "snapshot_time": self.snapshot_time.isoformat() + "Z" if self.snapshot_time else None,
        }

    def __repr__(self):
        return f"<WatchSnapshot(id={self.id}, target={self.target_name}, group={self.group_name})>"
