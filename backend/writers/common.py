"""
Writers common module.

Shared result type, base class and atomic publishing helpers. Output is
always staged next to its final location and moved into place in one step,
so a failed or cancelled write never leaves a half-written artifact behind.
"""
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from channel import Channel
from config import TargetOptions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result / base class
# ---------------------------------------------------------------------------

@dataclass
class WriterResult:
    """What a writer published for one target."""
    target_name: str
    kind: str
    path: str
    items_written: int = 0

    def to_dict(self) -> dict:
        return {
            "target_name": self.target_name,
            "kind": self.kind,
            "path": self.path,
            "items_written": self.items_written,
        }


class CatalogWriter(ABC):
    """Serializes one target's finished channel sequence."""

    kind: str = ""

    def __init__(self, options: Optional[TargetOptions] = None):
        self.options = options or TargetOptions()

    @abstractmethod
    def default_destination(self, output_dir: Path, target_name: str, filename: Optional[str]) -> Path:
        """Where this writer publishes when the target names no explicit path."""

    @abstractmethod
    def write(self, channels: Sequence[Channel], target_name: str, destination: Path) -> WriterResult:
        ...


# ---------------------------------------------------------------------------
# Atomic publishing
# ---------------------------------------------------------------------------

def atomic_write_text(path: Path, text: str) -> None:
    """Write text to a temporary sibling and rename it over path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def create_staging_dir(final: Path) -> Path:
    """Create an empty staging directory beside final."""
    final = Path(final)
    final.parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(dir=final.parent, prefix=f".{final.name}.", suffix=".staging"))


def publish_directory(staging: Path, final: Path) -> None:
    """
    Swap a fully written staging directory into place.

    The previous tree is renamed aside first and removed only after the new
    tree is in place.
    """
    staging, final = Path(staging), Path(final)
    backup = None
    if final.exists():
        backup = final.with_name(f".{final.name}.previous")
        if backup.exists():
            shutil.rmtree(backup)
        os.replace(final, backup)
    try:
        os.replace(staging, final)
    except OSError:
        if backup is not None:
            os.replace(backup, final)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def discard_staging(staging: Path) -> None:
    shutil.rmtree(staging, ignore_errors=True)


def sanitize_for_filename(text: str, underscore_whitespace: bool = False) -> str:
    """Keep letters, digits and whitespace; optionally turn whitespace into '_'."""
    kept = (c for c in text if c.isalnum() or c.isspace())
    if underscore_whitespace:
        return "".join("_" if c.isspace() else c for c in kept)
    return "".join(kept)
