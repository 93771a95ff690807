"""
Source Normalizer

Adapts raw provider records into canonical Channels. Each supported raw shape
has a RecordNormalizer variant exposing the same capability set (id, group,
name, stream locator, kind-specific flags):

- M3URecordNormalizer: records produced by parse_m3u_playlist()
- XtreamRecordNormalizer: get_live_streams / get_vod_streams / get_series dicts

A record missing a required field raises MalformedRecordError. The batch helper
normalize_records() skips such records, logs a warning and counts them so one
bad entry never aborts a run.
"""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from channel import Channel, ChannelKind
from errors import MalformedRecordError

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    """Discriminator for the raw record shapes the normalizer accepts."""
    M3U = "m3u"
    XTREAM_LIVE = "xtream_live"
    XTREAM_VOD = "xtream_vod"
    XTREAM_SERIES = "xtream_series"


# =============================================================================
# M3U playlist text
# =============================================================================

_ATTRIBUTE_RE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')


def _split_extinf(line: str) -> tuple[str, str]:
    """Split an #EXTINF line into (attribute part, title) at the first unquoted comma."""
    in_quotes = False
    for i, ch in enumerate(line):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            return line[:i], line[i + 1:].strip()
    return line, ""


def parse_m3u_playlist(text: str) -> list[dict]:
    """
    Parse M3U playlist text into raw records.

    Each record holds the EXTINF attributes by their original names
    (tvg-id, tvg-name, tvg-logo, group-title, ...), "title" (text after the
    comma), "extgrp" when an #EXTGRP line preceded the URL, and "url".
    Entries without a URL line are dropped.
    """
    records = []
    current: Optional[dict] = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF"):
            attributes, title = _split_extinf(line)
            current = {key: value for key, value in _ATTRIBUTE_RE.findall(attributes)}
            current["title"] = title
        elif line.startswith("#EXTGRP:"):
            if current is not None:
                current["extgrp"] = line[len("#EXTGRP:"):].strip()
        elif line.startswith("#"):
            continue
        else:
            if current is None:
                # Bare URL without EXTINF metadata
                current = {"title": ""}
            current["url"] = line
            records.append(current)
            current = None

    logger.debug("[NORMALIZE] Parsed %s entries from playlist text", len(records))
    return records


# =============================================================================
# Normalizers
# =============================================================================

class RecordNormalizer(ABC):
    """Reads the canonical capability set from one raw record shape."""

    source_kind: SourceKind

    def __init__(self, input_name: str = ""):
        self.input_name = input_name

    @abstractmethod
    def read_id(self, raw: dict) -> str:
        ...

    @abstractmethod
    def read_group(self, raw: dict) -> str:
        ...

    @abstractmethod
    def read_name(self, raw: dict) -> tuple[str, str]:
        """Return (name, title)."""

    @abstractmethod
    def read_url(self, raw: dict) -> str:
        ...

    @abstractmethod
    def read_flags(self, raw: dict) -> dict:
        """Kind-specific attributes: kind, logo, epg_id, direct_source, extra."""

    def normalize(self, raw: dict) -> Channel:
        if not isinstance(raw, dict):
            raise MalformedRecordError(f"expected a mapping, got {type(raw).__name__}")
        name, title = self.read_name(raw)
        url = self.read_url(raw)
        channel_id = self.read_id(raw)
        flags = self.read_flags(raw)
        return Channel(
            channel_id=channel_id,
            name=name,
            title=title,
            group=self.read_group(raw),
            url=url,
            input_name=self.input_name,
            **flags,
        )


def _text(raw: dict, *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def kind_from_url(url: str) -> ChannelKind:
    """Infer the catalog cluster from a provider stream URL path."""
    lowered = url.lower()
    if "/movie/" in lowered:
        return ChannelKind.MOVIE
    if "/series/" in lowered:
        return ChannelKind.SERIES
    return ChannelKind.LIVE


class M3URecordNormalizer(RecordNormalizer):
    source_kind = SourceKind.M3U

    _CONSUMED = {"tvg-id", "tvg-name", "tvg-logo", "logo", "group-title", "extgrp", "title", "url"}

    def read_id(self, raw: dict) -> str:
        # The URL is the only identifier a playlist guarantees.
        return self.read_url(raw)

    def read_group(self, raw: dict) -> str:
        return _text(raw, "group-title", "extgrp")

    def read_name(self, raw: dict) -> tuple[str, str]:
        title = _text(raw, "title")
        name = _text(raw, "tvg-name") or title
        if not name:
            raise MalformedRecordError("playlist entry has neither a title nor tvg-name", raw)
        return name, title or name

    def read_url(self, raw: dict) -> str:
        url = _text(raw, "url")
        if not url:
            raise MalformedRecordError("playlist entry has no stream URL", raw)
        return url

    def read_flags(self, raw: dict) -> dict:
        return {
            "kind": kind_from_url(self.read_url(raw)),
            "logo": _text(raw, "tvg-logo", "logo") or None,
            "epg_id": _text(raw, "tvg-id") or None,
            "extra": {k: v for k, v in raw.items() if k not in self._CONSUMED},
        }


_XTREAM_CLUSTERS = {
    SourceKind.XTREAM_LIVE: (ChannelKind.LIVE, "stream_id", "live"),
    SourceKind.XTREAM_VOD: (ChannelKind.MOVIE, "stream_id", "movie"),
    SourceKind.XTREAM_SERIES: (ChannelKind.SERIES_INFO, "series_id", "series"),
}


class XtreamRecordNormalizer(RecordNormalizer):
    """
    Normalizes player_api stream records.

    Category names come from the provider's category list (category_id ->
    category_name); the stream locator is built from the input's base URL and
    credentials the same way the provider's own playlist does.
    """

    _CONSUMED = {"name", "title", "stream_id", "series_id", "category_id", "category_name",
                 "stream_icon", "cover", "epg_channel_id", "direct_source"}

    def __init__(
        self,
        source_kind: SourceKind,
        base_url: str,
        username: str = "",
        password: str = "",
        categories: Optional[dict[str, str]] = None,
        input_name: str = "",
    ):
        super().__init__(input_name=input_name)
        if source_kind not in _XTREAM_CLUSTERS:
            raise ValueError(f"Not an xtream record kind: {source_kind}")
        self.source_kind = source_kind
        self.base_url = base_url.rstrip("/")
        self.username = username or ""
        self.password = password or ""
        self.categories = {str(k): v for k, v in (categories or {}).items()}
        self._kind, self._id_key, self._path = _XTREAM_CLUSTERS[source_kind]

    def read_id(self, raw: dict) -> str:
        value = raw.get(self._id_key)
        if value is None or str(value).strip() == "":
            raise MalformedRecordError(f"xtream record has no {self._id_key}", raw)
        return str(value).strip()

    def read_group(self, raw: dict) -> str:
        category_id = raw.get("category_id")
        if category_id is not None and str(category_id) in self.categories:
            return self.categories[str(category_id)]
        return _text(raw, "category_name")

    def read_name(self, raw: dict) -> tuple[str, str]:
        name = _text(raw, "name")
        if not name:
            raise MalformedRecordError("xtream record has no name", raw)
        return name, _text(raw, "title") or name

    def read_url(self, raw: dict) -> str:
        stream_id = self.read_id(raw)
        credentials = f"{self.username}/{self.password}"
        if self.source_kind == SourceKind.XTREAM_LIVE:
            return f"{self.base_url}/live/{credentials}/{stream_id}.ts"
        if self.source_kind == SourceKind.XTREAM_VOD:
            extension = _text(raw, "container_extension") or "mp4"
            return f"{self.base_url}/movie/{credentials}/{stream_id}.{extension}"
        return (
            f"{self.base_url}/player_api.php?username={self.username}&password={self.password}"
            f"&action=get_series_info&series_id={stream_id}"
        )

    def read_flags(self, raw: dict) -> dict:
        return {
            "kind": self._kind,
            "logo": _text(raw, "stream_icon", "cover") or None,
            "epg_id": _text(raw, "epg_channel_id") or None,
            "direct_source": _text(raw, "direct_source") or None,
            "extra": {k: v for k, v in raw.items() if k not in self._CONSUMED},
        }


def get_normalizer(source_kind: SourceKind | str, **kwargs) -> RecordNormalizer:
    """Build the normalizer variant for a raw record shape."""
    source_kind = SourceKind(source_kind)
    if source_kind == SourceKind.M3U:
        return M3URecordNormalizer(input_name=kwargs.get("input_name", ""))
    return XtreamRecordNormalizer(source_kind, **kwargs)


def normalize(raw_record: dict, source_kind: SourceKind | str, **kwargs) -> Channel:
    """Normalize one raw record. Raises MalformedRecordError."""
    return get_normalizer(source_kind, **kwargs).normalize(raw_record)


# =============================================================================
# Batch normalization
# =============================================================================

@dataclass
class RecordDiagnostic:
    """One skipped record."""
    input_name: str
    source_kind: str
    index: int
    reason: str

    def to_dict(self) -> dict:
        return {
            "input_name": self.input_name,
            "source_kind": self.source_kind,
            "index": self.index,
            "reason": self.reason,
        }


@dataclass
class NormalizationResult:
    channels: list[Channel] = field(default_factory=list)
    errors: list[RecordDiagnostic] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.errors)

    def extend(self, other: "NormalizationResult") -> None:
        self.channels.extend(other.channels)
        self.errors.extend(other.errors)


def normalize_records(records: Iterable[Any], normalizer: RecordNormalizer) -> NormalizationResult:
    """Normalize a batch, skipping and recording malformed entries."""
    result = NormalizationResult()
    for index, raw in enumerate(records):
        try:
            result.channels.append(normalizer.normalize(raw))
        except MalformedRecordError as e:
            logger.warning(
                "[NORMALIZE] Skipping %s record #%s from %s: %s",
                normalizer.source_kind.value, index, normalizer.input_name or "input", e.reason,
            )
            result.errors.append(RecordDiagnostic(
                input_name=normalizer.input_name,
                source_kind=normalizer.source_kind.value,
                index=index,
                reason=e.reason,
            ))
    logger.info(
        "[NORMALIZE] %s: %s channels normalized, %s skipped",
        normalizer.input_name or normalizer.source_kind.value, len(result.channels), result.skipped,
    )
    return result
