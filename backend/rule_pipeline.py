"""
Rule Pipeline

Ordered transformation stages applied to one target's channel sequence. The
rule set is closed: RenameRule, SortRule, MappingRule, WatchRule and
MapRule, built from validated configuration by build_rule() and run by
RulePipeline in the declared order. Every stage takes and returns an ordered
list, so later stages see earlier renames and reorderings.

Stages never mutate their input; rewritten channels are fresh copies.
"""
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from channel import Channel, ItemField
from config import (
    MAP_TAG_RE,
    MappingRuleConfig,
    MapRuleConfig,
    RenameRuleConfig,
    SortRuleConfig,
    WatchRuleConfig,
)
from errors import InvalidPatternError, PipelineCancelled, UnknownRuleParameterError
from filter_expression import CompiledFilter, collect_captures, parse
from template_registry import TemplateRegistry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5000


class RuleKind(str, Enum):
    RENAME = "rename"
    SORT = "sort"
    MAPPING = "mapping"
    WATCH = "watch"
    MAP = "map"


@dataclass(frozen=True)
class RenameRule:
    """Rewrite the first match of pattern in a field using a replacement template."""
    item_field: ItemField
    pattern: re.Pattern
    new_name: str

    kind = RuleKind.RENAME


@dataclass(frozen=True)
class SortRule:
    """Stable sort on a field."""
    item_field: ItemField = ItemField.GROUP
    descending: bool = False

    kind = RuleKind.SORT


@dataclass(frozen=True)
class MappingRule:
    """Allow-list of groups that also fixes their order."""
    groups: tuple = ()
    additive: bool = False

    kind = RuleKind.MAPPING


@dataclass(frozen=True)
class WatchRule:
    """Tag channels whose group matches pattern."""
    pattern: re.Pattern
    label: str

    kind = RuleKind.WATCH


@dataclass(frozen=True)
class MapTag:
    name: str
    captures: tuple
    concat: str = ""
    prefix: str = ""
    suffix: str = ""


@dataclass(frozen=True)
class MapRule:
    """Rewrite fields of channels matching pattern from the pattern's named captures."""
    pattern: CompiledFilter
    filter: Optional[CompiledFilter] = None
    attributes: tuple = ()  # (ItemField, template) pairs
    prefix: tuple = ()
    suffix: tuple = ()
    assignments: tuple = ()  # (target ItemField, source ItemField) pairs
    tags: tuple = ()

    kind = RuleKind.MAP


Rule = Union[RenameRule, SortRule, MappingRule, WatchRule, MapRule]


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(pattern, str(e)) from e


def _compile_expression(text: str, registry: Optional[TemplateRegistry]) -> CompiledFilter:
    return parse(registry.resolve(text) if registry is not None else text)


def _field_pairs(mapping: dict) -> tuple:
    return tuple((ItemField(key), value) for key, value in mapping.items())


def build_rule(config, registry: Optional[TemplateRegistry] = None) -> Rule:
    """
    Compile one validated rule configuration.

    registry expands template references in map rule expressions.
    """
    if isinstance(config, RenameRuleConfig):
        return RenameRule(ItemField(config.field), _compile(config.pattern), config.new_name)
    if isinstance(config, SortRuleConfig):
        return SortRule(ItemField(config.field), descending=config.order == "desc")
    if isinstance(config, MappingRuleConfig):
        return MappingRule(tuple(config.groups), additive=config.additive)
    if isinstance(config, WatchRuleConfig):
        return WatchRule(_compile(config.pattern), config.label or config.pattern)
    if isinstance(config, MapRuleConfig):
        return MapRule(
            pattern=_compile_expression(config.pattern, registry),
            filter=_compile_expression(config.filter, registry) if config.filter else None,
            attributes=_field_pairs(config.attributes),
            prefix=_field_pairs(config.prefix),
            suffix=_field_pairs(config.suffix),
            assignments=tuple(
                (ItemField(target), ItemField(source)) for target, source in config.assignments.items()
            ),
            tags=tuple(
                MapTag(t.name, tuple(t.captures), t.concat, t.prefix, t.suffix) for t in config.tags
            ),
        )
    raise UnknownRuleParameterError(type(config).__name__, "type")


# =============================================================================
# Rename
# =============================================================================

_REPLACEMENT_RE = re.compile(r"\$(?:(\$)|(\d+)|\{(\w+)\})")


def expand_replacement(template: str, match: re.Match) -> str:
    """
    Substitute capture references in a replacement template.

    $1 .. $N and ${N} insert numbered groups, ${name} a named group, $$ a
    literal dollar sign. Groups that did not participate, or do not exist,
    insert nothing.
    """
    def _replace(ref_match: re.Match) -> str:
        if ref_match.group(1):
            return "$"
        ref = ref_match.group(2) or ref_match.group(3)
        try:
            value = match.group(int(ref) if ref.isdigit() else ref)
        except IndexError:
            return ""
        return value or ""

    return _REPLACEMENT_RE.sub(_replace, template)


def apply_rename(channels: Sequence[Channel], rule: RenameRule) -> list[Channel]:
    result = []
    renamed = 0
    for channel in channels:
        value = channel.get_field(rule.item_field)
        match = rule.pattern.search(value)
        if match:
            new_value = value[:match.start()] + expand_replacement(rule.new_name, match) + value[match.end():]
            if new_value != value:
                channel = channel.with_field(rule.item_field, new_value)
                renamed += 1
        result.append(channel)
    logger.debug("[PIPELINE] rename %s /%s/: %s renamed", rule.item_field.value, rule.pattern.pattern, renamed)
    return result


# =============================================================================
# Sort / Mapping / Watch
# =============================================================================

def apply_sort(channels: Sequence[Channel], rule: SortRule) -> list[Channel]:
    # sorted() is stable in both directions
    return sorted(channels, key=lambda c: c.get_field(rule.item_field), reverse=rule.descending)


def apply_mapping(channels: Sequence[Channel], rule: MappingRule) -> list[Channel]:
    if not rule.groups:
        return list(channels)

    positions: dict[str, int] = {}
    for index, group in enumerate(rule.groups):
        positions.setdefault(group, index)

    buckets: list[list[Channel]] = [[] for _ in rule.groups]
    unmapped: list[Channel] = []
    for channel in channels:
        index = positions.get(channel.group)
        if index is None:
            unmapped.append(channel)
        else:
            buckets[index].append(channel)

    result = [channel for bucket in buckets for channel in bucket]
    if rule.additive:
        result.extend(unmapped)
    elif unmapped:
        logger.debug("[PIPELINE] mapping dropped %s channels outside the allow-list", len(unmapped))
    return result


def apply_watch(channels: Sequence[Channel], rule: WatchRule) -> list[Channel]:
    result = []
    for channel in channels:
        if rule.pattern.search(channel.group):
            channel = channel.with_watch_label(rule.label)
        result.append(channel)
    return result


# =============================================================================
# Map
# =============================================================================

_CAPTURE_REF_RE = re.compile(r"<(.*?)>")


def expand_captures(template: str, captures: dict[str, str]) -> str:
    """Replace `<name>` with a captured value. Unknown names stay as written."""
    return _CAPTURE_REF_RE.sub(lambda m: captures.get(m.group(1), m.group(0)), template)


def expand_tags(template: str, tags: dict[str, MapTag], captures: dict[str, str]) -> Optional[str]:
    """
    Resolve `<tag:NAME>` placeholders.

    A tag joins its captures with concat and wraps them in its prefix and
    suffix; blank captured text yields "". Returns None when a tag needs a
    capture the pattern did not provide, so the affix is not applied.
    """
    result = template
    for name in MAP_TAG_RE.findall(template):
        tag = tags.get(name)
        if tag is None:
            continue
        values = []
        for capture in tag.captures:
            if capture not in captures:
                return None
            values.append(captures[capture])
        text = tag.concat.join(values)
        replacement = f"{tag.prefix}{text}{tag.suffix}" if text.strip() else ""
        result = result.replace(f"<tag:{name}>", replacement)
    return result


def map_channel(channel: Channel, rule: MapRule, tags: dict[str, MapTag]) -> Channel:
    """Apply attributes, suffixes, prefixes and assignments, in that order."""
    if rule.filter is not None and not rule.filter.matches(channel):
        return channel
    if not rule.pattern.matches(channel):
        return channel

    captures = collect_captures(rule.pattern.root, channel)
    for item_field, template in rule.attributes:
        channel = channel.with_field(item_field, expand_captures(template, captures))
    for item_field, template in rule.suffix:
        suffix = expand_tags(template, tags, captures)
        if suffix is not None:
            channel = channel.with_field(item_field, channel.get_field(item_field) + suffix)
    for item_field, template in rule.prefix:
        prefix = expand_tags(template, tags, captures)
        if prefix is not None:
            channel = channel.with_field(item_field, prefix + channel.get_field(item_field))
    for target, source in rule.assignments:
        channel = channel.with_field(target, channel.get_field(source))
    return channel


def apply_map(channels: Sequence[Channel], rule: MapRule) -> list[Channel]:
    tags = {tag.name: tag for tag in rule.tags}
    result = [map_channel(channel, rule, tags) for channel in channels]
    changed = sum(1 for before, after in zip(channels, result) if before is not after)
    logger.debug("[PIPELINE] map %s: %s channels rewritten", rule.pattern.source, changed)
    return result


# =============================================================================
# Executor
# =============================================================================

_PER_CHANNEL = {RuleKind.RENAME: apply_rename, RuleKind.WATCH: apply_watch, RuleKind.MAP: apply_map}
_WHOLE_SEQUENCE = {RuleKind.SORT: apply_sort, RuleKind.MAPPING: apply_mapping}


class RulePipeline:
    """
    Runs a fixed rule list over a channel sequence.

    Usage:
        pipeline = RulePipeline([build_rule(c) for c in target.ordered_rules()], name="pl1")
        channels = pipeline.apply(channels, cancel_event)

    Cancellation is checked before each stage and every batch_size channels
    inside per-channel stages; a set event raises PipelineCancelled.
    """

    def __init__(self, rules: Sequence[Rule], name: str = "", batch_size: int = DEFAULT_BATCH_SIZE):
        self.rules = tuple(rules)
        self.name = name
        self.batch_size = max(1, batch_size)

    def __len__(self) -> int:
        return len(self.rules)

    def apply(self, channels: Sequence[Channel], cancel_event: Optional[threading.Event] = None) -> list[Channel]:
        current = list(channels)
        for position, rule in enumerate(self.rules):
            self._check_cancel(cancel_event)
            before = len(current)
            if rule.kind in _PER_CHANNEL:
                current = self._apply_batched(_PER_CHANNEL[rule.kind], current, rule, cancel_event)
            elif rule.kind in _WHOLE_SEQUENCE:
                current = _WHOLE_SEQUENCE[rule.kind](current, rule)
            else:
                raise TypeError(f"Unhandled rule kind: {rule.kind}")
            logger.debug(
                "[PIPELINE] %s step %s (%s): %s -> %s channels",
                self.name, position + 1, rule.kind.value, before, len(current),
            )
        return current

    def _apply_batched(self, stage, channels: list[Channel], rule: Rule,
                       cancel_event: Optional[threading.Event]) -> list[Channel]:
        result = []
        for start in range(0, len(channels), self.batch_size):
            if start:
                self._check_cancel(cancel_event)
            result.extend(stage(channels[start:start + self.batch_size], rule))
        return result

    def _check_cancel(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(f"Pipeline for '{self.name}' cancelled")
