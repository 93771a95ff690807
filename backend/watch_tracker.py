"""
Watch Change Tracking.

After a target's rule pipeline, channels tagged by a watch rule are grouped by
group title and compared with the titles stored for that (target, group) on
the previous run. Added and removed titles are logged; a new snapshot is
stored when the title set changed or no snapshot existed yet.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from channel import Channel
from models import WatchSnapshot

logger = logging.getLogger(__name__)

# Targets are tracked from worker threads; SQLite sessions share one connection
_track_lock = threading.Lock()


@dataclass
class WatchChange:
    """Title differences for one watched group."""
    target_name: str
    group_name: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    first_snapshot: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict:
        return {
            "target_name": self.target_name,
            "group_name": self.group_name,
            "added": self.added,
            "removed": self.removed,
            "first_snapshot": self.first_snapshot,
        }


def collect_watched_groups(channels: Sequence[Channel]) -> dict[str, set[str]]:
    """Group titles of watch-labelled channels by group, in first-seen group order."""
    groups: dict[str, set[str]] = {}
    for channel in channels:
        if channel.watch_labels:
            groups.setdefault(channel.group, set()).add(channel.display_title)
    return groups


class WatchTracker:
    """
    Compares watched groups with stored snapshots.

    session_factory is called once per track() call; the session is closed
    before returning.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get_latest_snapshot(self, db: Session, target_name: str, group_name: str) -> Optional[WatchSnapshot]:
        return (
            db.query(WatchSnapshot)
            .filter(WatchSnapshot.target_name == target_name, WatchSnapshot.group_name == group_name)
            .order_by(WatchSnapshot.snapshot_time.desc(), WatchSnapshot.id.desc())
            .first()
        )

    def compare_group(self, db: Session, target_name: str, group_name: str, titles: set[str]) -> WatchChange:
        previous = self.get_latest_snapshot(db, target_name, group_name)
        change = WatchChange(target_name=target_name, group_name=group_name)

        if previous is None:
            change.first_snapshot = True
            change.added = sorted(titles)
        else:
            previous_titles = set(previous.get_titles())
            change.added = sorted(titles - previous_titles)
            change.removed = sorted(previous_titles - titles)

        if previous is None or change.has_changes:
            snapshot = WatchSnapshot(
                target_name=target_name,
                group_name=group_name,
                snapshot_time=datetime.utcnow(),
            )
            snapshot.set_titles(titles)
            db.add(snapshot)
        return change

    def track(self, target_name: str, channels: Sequence[Channel]) -> list[WatchChange]:
        """
        Compare every watched group of a target with its previous snapshot.

        Failures are logged and yield an empty list.
        """
        watched = collect_watched_groups(channels)
        if not watched:
            return []

        try:
            with _track_lock:
                db = self.session_factory()
                try:
                    changes = [
                        self.compare_group(db, target_name, group_name, titles)
                        for group_name, titles in watched.items()
                    ]
                    db.commit()
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()
        except Exception as e:
            logger.error("[WATCH] Watch tracking failed for target %s: %s", target_name, e)
            return []

        for change in changes:
            if change.first_snapshot:
                logger.info(
                    "[WATCH] Changes %s/%s: first snapshot with %s titles",
                    target_name, change.group_name, len(change.added),
                )
            elif change.has_changes:
                logger.info(
                    "[WATCH] Changes %s/%s: added %s, removed %s",
                    target_name, change.group_name, change.added, change.removed,
                )
            else:
                logger.debug("[WATCH] No changes for %s/%s", target_name, change.group_name)
        return changes
