"""
Catalog Pipeline Engine

Orchestrates one catalog configuration end to end:

    inputs -> provider -> normalizer -> dispatcher (targets in parallel) -> report

All templates, filters and rules are compiled when the engine is constructed,
so a configuration error surfaces before any input is read. run() can be
called repeatedly; each call returns a RunReport with per-target results and
skipped-record diagnostics, and optionally records it in the run journal.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

import database
import journal
from config import AppSettings, CatalogConfig, SourceConfig, get_settings
from errors import ConfigurationError, InputError
from source_normalizer import NormalizationResult, RecordDiagnostic, normalize_records
from sources import InputProvider
from target_dispatcher import CompiledTarget, TargetDispatcher, TargetResult, TargetStatus, compile_target
from template_registry import TemplateRegistry
from watch_tracker import WatchTracker

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunReport:
    """Result of one pipeline run."""
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    status: RunStatus = RunStatus.SUCCESS
    channels_total: int = 0
    targets: list[TargetResult] = field(default_factory=list)
    diagnostics: list[RecordDiagnostic] = field(default_factory=list)
    input_errors: list[str] = field(default_factory=list)

    @property
    def targets_ok(self) -> int:
        return sum(1 for t in self.targets if t.status == TargetStatus.OK)

    @property
    def targets_failed(self) -> int:
        return sum(1 for t in self.targets if t.status == TargetStatus.FAILED)

    @property
    def targets_cancelled(self) -> int:
        return sum(1 for t in self.targets if t.status == TargetStatus.CANCELLED)

    def finish(self) -> None:
        self.completed_at = datetime.utcnow()
        if self.targets_cancelled:
            self.status = RunStatus.CANCELLED
        elif self.targets and self.targets_failed == len(self.targets):
            self.status = RunStatus.FAILED
        elif self.targets_failed or self.input_errors:
            self.status = RunStatus.PARTIAL
        else:
            self.status = RunStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() + "Z",
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "status": self.status.value,
            "channels_total": self.channels_total,
            "targets_ok": self.targets_ok,
            "targets_failed": self.targets_failed,
            "targets": [t.to_dict() for t in self.targets],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "input_errors": list(self.input_errors),
        }


def build_registry(config: CatalogConfig, max_depth: int) -> TemplateRegistry:
    """Register, freeze and fully validate the configured templates."""
    registry = TemplateRegistry(max_depth=max_depth)
    for template in config.templates:
        registry.register(template.name, template.value)
    registry.freeze()
    registry.validate()
    return registry


class CatalogPipelineEngine:
    """
    Runs a catalog configuration against an input provider.

    Args:
        config: validated catalog configuration
        settings: process settings (defaults to get_settings())
        provider: source of raw record batches
        session_factory: enables watch change tracking when given
        only_targets: restrict the run to these target names
    """

    def __init__(
        self,
        config: CatalogConfig,
        settings: Optional[AppSettings] = None,
        provider: Optional[InputProvider] = None,
        session_factory: Optional[Callable[[], Session]] = None,
        only_targets: Optional[Iterable[str]] = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.provider = provider
        self.watch_tracker = WatchTracker(session_factory) if session_factory else None
        self.registry = build_registry(config, self.settings.template_max_depth)

        wanted = set(only_targets) if only_targets else None
        if wanted:
            known = {t.name for source in config.sources for t in source.targets}
            unknown = sorted(wanted - known)
            if unknown:
                raise ConfigurationError(f"Unknown target(s): {', '.join(unknown)}")

        output_dir = self.settings.resolved_output_dir
        self.compiled: list[tuple[SourceConfig, list[CompiledTarget]]] = []
        for source in config.sources:
            targets = [
                compile_target(target, self.registry, output_dir, self.settings.pipeline_batch_size)
                for target in source.targets
                if target.enabled and (wanted is None or target.name in wanted)
            ]
            self.compiled.append((source, targets))

        logger.info(
            "[PIPELINE] Compiled %s templates and %s targets across %s sources",
            len(self.registry), self.target_count, len(self.compiled),
        )

    @property
    def target_count(self) -> int:
        return sum(len(targets) for _, targets in self.compiled)

    def normalize_source(self, source: SourceConfig, report: RunReport) -> NormalizationResult:
        """Fetch and normalize every enabled input of a source."""
        result = NormalizationResult()
        for input_config in source.inputs:
            if not input_config.enabled:
                continue
            try:
                batches = self.provider.fetch(input_config)
            except InputError as e:
                logger.error("[NORMALIZE] %s", e)
                report.input_errors.append(str(e))
                continue
            except Exception as e:
                error = InputError(input_config.name, f"provider failed: {e}")
                logger.error("[NORMALIZE] %s", error, exc_info=True)
                report.input_errors.append(str(error))
                continue
            for batch in batches:
                result.extend(normalize_records(batch.records, batch.normalizer()))
        return result

    def run(self, cancel_event: Optional[threading.Event] = None) -> RunReport:
        if self.provider is None:
            raise ConfigurationError("No input provider configured")

        report = RunReport()
        logger.info("[PIPELINE] Run started: %s targets", self.target_count)

        for source, targets in self.compiled:
            if not targets:
                continue
            if cancel_event is not None and cancel_event.is_set():
                report.targets.extend(
                    TargetResult(target_name=t.name, status=TargetStatus.CANCELLED, error="Run cancelled")
                    for t in targets
                )
                continue

            normalized = self.normalize_source(source, report)
            report.channels_total += len(normalized.channels)
            report.diagnostics.extend(normalized.errors)

            dispatcher = TargetDispatcher(targets, self.settings.max_workers, self.watch_tracker)
            report.targets.extend(dispatcher.run(normalized.channels, cancel_event))

        report.finish()
        logger.info(
            "[PIPELINE] Run %s: %s ok, %s failed, %s records skipped",
            report.status.value, report.targets_ok, report.targets_failed, len(report.diagnostics),
        )

        if self.settings.journal_enabled and database.is_initialized():
            journal.record_run(report)
        return report
