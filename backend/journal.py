"""
Journal service layer for recording and querying pipeline runs.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from database import get_session
from models import PipelineRun

logger = logging.getLogger(__name__)


def record_run(report) -> Optional[PipelineRun]:
    """
    Persist a finished run.

    Args:
        report: RunReport returned by CatalogPipelineEngine.run()

    Returns:
        The created PipelineRun or None if it could not be stored
    """
    try:
        session: Session = get_session()
        try:
            run = PipelineRun(
                started_at=report.started_at,
                completed_at=report.completed_at,
                status=report.status.value,
                channels_total=report.channels_total,
                records_skipped=len(report.diagnostics),
                targets_ok=report.targets_ok,
                targets_failed=report.targets_failed,
                targets_json=json.dumps([t.to_dict() for t in report.targets]),
                diagnostics_json=json.dumps([d.to_dict() for d in report.diagnostics]) if report.diagnostics else None,
            )
            session.add(run)
            session.commit()
            logger.debug("[JOURNAL] Recorded run %s (%s)", run.id, run.status)
            return run
        finally:
            session.close()
    except Exception as e:
        logger.error("[JOURNAL] Failed to record pipeline run: %s", e)
        return None


def get_runs(limit: int = 20, status: Optional[str] = None) -> list[dict]:
    """Most recent runs first."""
    session: Session = get_session()
    try:
        query = session.query(PipelineRun)
        if status:
            query = query.filter(PipelineRun.status == status)
        runs = query.order_by(desc(PipelineRun.started_at), desc(PipelineRun.id)).limit(limit).all()
        return [run.to_dict() for run in runs]
    finally:
        session.close()


def purge_old_runs(days: int = 90) -> int:
    """
    Delete runs older than the specified number of days.

    Returns:
        Number of runs deleted
    """
    session: Session = get_session()
    try:
        cutoff_date = datetime.utcnow() - timedelta(days=days)
        deleted_count = (
            session.query(PipelineRun)
            .filter(PipelineRun.started_at < cutoff_date)
            .delete()
        )
        session.commit()
        logger.info("[JOURNAL] Purged %s pipeline runs older than %s days", deleted_count, days)
        return deleted_count
    finally:
        session.close()
