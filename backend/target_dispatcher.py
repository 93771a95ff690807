"""
Target Dispatcher

Fans one normalized channel sequence out to every enabled target of a source.
Each target owns a compiled filter, a RulePipeline and a writer, built once
per configuration load by compile_target(). At run time every target is
processed on a bounded worker pool:

    select (filter) -> rule pipeline -> writer -> watch tracking

The shared channel sequence is a tuple of frozen Channels, so workers can
read it concurrently; each worker builds its own working list. A failure in
one target is logged, reported in its TargetResult and never reaches the
other targets.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from channel import Channel
from config import OutputKind, TargetConfig
from errors import PipelineCancelled, TargetError
from filter_expression import CompiledFilter, parse
from rule_pipeline import DEFAULT_BATCH_SIZE, RulePipeline, build_rule
from template_registry import TemplateRegistry
from watch_tracker import WatchTracker
from writers import CatalogWriter, get_writer

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class TargetStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CompiledTarget:
    """Everything needed to produce one target, compiled at load time."""
    name: str
    kind: OutputKind
    filter: Optional[CompiledFilter]  # None selects every channel
    pipeline: RulePipeline
    writer: CatalogWriter
    destination: Path

    def select(self, channels: Sequence[Channel]) -> list[Channel]:
        if self.filter is None:
            return list(channels)
        return [channel for channel in channels if self.filter.matches(channel)]


def compile_target(
    target: TargetConfig,
    registry: TemplateRegistry,
    output_dir: Path,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> CompiledTarget:
    """
    Resolve and parse a target's filter and build its rules and writer.

    Raises ConfigurationError subclasses for unresolved templates, syntax
    errors, unknown fields and invalid patterns.
    """
    compiled_filter = None
    if target.filter and target.filter.strip():
        compiled_filter = parse(registry.resolve(target.filter))

    rules = [build_rule(rule_config, registry) for rule_config in target.ordered_rules()]
    writer = get_writer(target.type, target.options)
    destination = writer.default_destination(Path(output_dir), target.name, target.filename)

    logger.debug(
        "[DISPATCH] Compiled target %s (%s): filter=%s, %s rules -> %s",
        target.name, target.type.value,
        compiled_filter.to_text() if compiled_filter else "<all>", len(rules), destination,
    )
    return CompiledTarget(
        name=target.name,
        kind=OutputKind(target.type),
        filter=compiled_filter,
        pipeline=RulePipeline(rules, name=target.name, batch_size=batch_size),
        writer=writer,
        destination=destination,
    )


@dataclass
class TargetResult:
    """Outcome of one target in one run."""
    target_name: str
    status: TargetStatus
    channels_selected: int = 0
    channels_written: int = 0
    path: Optional[str] = None
    error: Optional[str] = None
    watch_changes: list = field(default_factory=list)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == TargetStatus.OK

    def to_dict(self) -> dict:
        return {
            "target_name": self.target_name,
            "status": self.status.value,
            "channels_selected": self.channels_selected,
            "channels_written": self.channels_written,
            "path": self.path,
            "error": self.error,
            "watch_changes": [c.to_dict() for c in self.watch_changes],
            "duration_ms": self.duration_ms,
        }


class TargetDispatcher:
    """
    Runs compiled targets over a shared channel sequence.

    Results are returned in target declaration order regardless of
    completion order.
    """

    def __init__(
        self,
        targets: Sequence[CompiledTarget],
        max_workers: int = DEFAULT_MAX_WORKERS,
        watch_tracker: Optional[WatchTracker] = None,
    ):
        self.targets = list(targets)
        self.max_workers = max(1, max_workers)
        self.watch_tracker = watch_tracker

    def run(
        self,
        channels: Sequence[Channel],
        cancel_event: Optional[threading.Event] = None,
    ) -> list[TargetResult]:
        if not self.targets:
            return []

        shared = tuple(channels)
        results: dict[str, TargetResult] = {}
        workers = min(self.max_workers, len(self.targets))
        logger.info(
            "[DISPATCH] Dispatching %s channels to %s targets (%s workers)",
            len(shared), len(self.targets), workers,
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="target") as executor:
            future_to_target = {
                executor.submit(self.process_target, target, shared, cancel_event): target
                for target in self.targets
            }
            for future in as_completed(future_to_target):
                target = future_to_target[future]
                results[target.name] = future.result()

        return [results[target.name] for target in self.targets]

    def process_target(
        self,
        target: CompiledTarget,
        channels: Sequence[Channel],
        cancel_event: Optional[threading.Event] = None,
    ) -> TargetResult:
        """Process one target; never raises."""
        started = time.monotonic()
        result = TargetResult(target_name=target.name, status=TargetStatus.OK)
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled(f"Run cancelled before target '{target.name}'")

            selected = target.select(channels)
            result.channels_selected = len(selected)
            logger.debug("[DISPATCH] %s: %s of %s channels selected", target.name, len(selected), len(channels))

            finished = target.pipeline.apply(selected, cancel_event)

            if cancel_event is not None and cancel_event.is_set():
                raise PipelineCancelled(f"Run cancelled before writing '{target.name}'")

            written = target.writer.write(finished, target.name, target.destination)
            result.channels_written = written.items_written
            result.path = written.path

            if self.watch_tracker is not None:
                result.watch_changes = self.watch_tracker.track(target.name, finished)
        except PipelineCancelled as e:
            result.status = TargetStatus.CANCELLED
            result.error = str(e)
            logger.warning("[DISPATCH] %s", e)
        except Exception as e:
            error = TargetError(target.name, e)
            result.status = TargetStatus.FAILED
            result.error = str(error)
            logger.error("[DISPATCH] %s", error, exc_info=True)
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)

        if result.ok:
            logger.info(
                "[DISPATCH] %s: %s selected, %s written in %sms",
                target.name, result.channels_selected, result.channels_written, result.duration_ms,
            )
        return result
