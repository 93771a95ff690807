"""
Canonical Channel Model

The normalized, format-agnostic representation of one catalog entry. Every
provider record is turned into a Channel before filtering, and all downstream
stages (filters, rules, writers) read only this shape.

Channels are frozen: rules produce rewritten copies via with_field(), so one
normalized sequence can be shared by every target without copying.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class ChannelKind(str, Enum):
    """Catalog cluster a channel belongs to."""
    LIVE = "live"
    MOVIE = "movie"
    SERIES = "series"
    SERIES_INFO = "series_info"  # Series container record (xtream get_series)

    @classmethod
    def parse(cls, value: str) -> "ChannelKind":
        normalized = (value or "").strip().lower()
        aliases = {"video": cls.MOVIE, "vod": cls.MOVIE}
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


class ItemField(str, Enum):
    """Channel attributes addressable from filters and rules."""
    GROUP = "group"
    NAME = "name"
    TITLE = "title"
    URL = "url"
    INPUT = "input"
    TYPE = "type"

    @classmethod
    def lookup(cls, name: str) -> Optional["ItemField"]:
        """Case-insensitive lookup, None if the name is not a field."""
        try:
            return cls(name.lower())
        except ValueError:
            return None


# Fields a rename rule may rewrite. Identity and stream locator are never rewritten.
RENAMEABLE_FIELDS = (ItemField.GROUP, ItemField.NAME, ItemField.TITLE)


def _frozen_mapping(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class Channel:
    """
    One catalog entry.

    channel_id and url are provider-owned and pass through the pipeline
    untouched; group, name and title may be rewritten by rename rules.
    """
    channel_id: str
    name: str
    group: str
    url: str
    title: str = ""
    kind: ChannelKind = ChannelKind.LIVE
    logo: Optional[str] = None
    epg_id: Optional[str] = None
    input_name: str = ""
    direct_source: Optional[str] = None  # Provider-direct stream URL (xtream)
    extra: Mapping[str, Any] = field(default_factory=dict)
    watch_labels: tuple = ()

    def __post_init__(self):
        if not isinstance(self.extra, MappingProxyType):
            object.__setattr__(self, "extra", _frozen_mapping(self.extra))
        if not self.title:
            object.__setattr__(self, "title", self.name)

    @property
    def display_title(self) -> str:
        return self.title or self.name

    def get_field(self, item_field: ItemField) -> str:
        """Read a field as text for matching."""
        if item_field == ItemField.GROUP:
            return self.group
        if item_field == ItemField.NAME:
            return self.name
        if item_field == ItemField.TITLE:
            return self.title
        if item_field == ItemField.URL:
            return self.url
        if item_field == ItemField.INPUT:
            return self.input_name
        if item_field == ItemField.TYPE:
            # Series containers filter as series
            if self.kind == ChannelKind.SERIES_INFO:
                return ChannelKind.SERIES.value
            return self.kind.value
        raise ValueError(f"Unsupported field: {item_field}")

    def with_field(self, item_field: ItemField, value: str) -> "Channel":
        """Return a copy with one display/classification field rewritten."""
        if item_field not in RENAMEABLE_FIELDS:
            raise ValueError(f"Field '{item_field.value}' cannot be rewritten")
        return replace(self, **{item_field.value: value})

    def with_watch_label(self, label: str) -> "Channel":
        if label in self.watch_labels:
            return self
        return replace(self, watch_labels=self.watch_labels + (label,))

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "name": self.name,
            "title": self.title,
            "group": self.group,
            "url": self.url,
            "kind": self.kind.value,
            "logo": self.logo,
            "epg_id": self.epg_id,
            "input_name": self.input_name,
            "direct_source": self.direct_source,
            "extra": dict(self.extra),
            "watch_labels": list(self.watch_labels),
        }
