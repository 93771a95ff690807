"""
Input providers.

The pipeline does not fetch provider data itself; an InputProvider hands it
raw record batches, one per raw shape. LocalFileInputProvider reads saved
playlists and player_api dumps from a directory:

- m3u inputs:    <inputs_dir>/<input name>.m3u  (or the input's `persist` path)
- xtream inputs: <inputs_dir>/<input name>/ holding live_categories.json,
                 live_streams.json, vod_categories.json, vod_streams.json,
                 series_categories.json, series.json

The xtream layout is the same one XtreamWriter produces, so a published
xtream target can be fed back in as an input.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from config import InputConfig, InputKind
from errors import InputError
from source_normalizer import RecordNormalizer, SourceKind, get_normalizer, parse_m3u_playlist

logger = logging.getLogger(__name__)

# source kind -> (categories file, streams file)
XTREAM_DUMP_FILES = {
    SourceKind.XTREAM_LIVE: ("live_categories.json", "live_streams.json"),
    SourceKind.XTREAM_VOD: ("vod_categories.json", "vod_streams.json"),
    SourceKind.XTREAM_SERIES: ("series_categories.json", "series.json"),
}

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass
class RawBatch:
    """Raw records of one shape from one input, plus the normalizer that reads them."""
    input_name: str
    source_kind: SourceKind
    records: list = field(default_factory=list)
    normalizer_options: dict = field(default_factory=dict)

    def normalizer(self) -> RecordNormalizer:
        return get_normalizer(self.source_kind, input_name=self.input_name, **self.normalizer_options)


class InputProvider(Protocol):
    def fetch(self, input_config: InputConfig) -> list[RawBatch]:
        """Return the raw batches for one input. Raises InputError."""
        ...


def safe_input_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name).strip("_") or "input"


def _categories_by_id(categories) -> dict[str, str]:
    mapping = {}
    for category in categories or []:
        if isinstance(category, dict) and category.get("category_id") is not None:
            mapping[str(category["category_id"])] = str(category.get("category_name", ""))
    return mapping


class LocalFileInputProvider:
    """Reads saved provider data from a directory."""

    def __init__(self, inputs_dir: str | Path):
        self.inputs_dir = Path(inputs_dir)

    def fetch(self, input_config: InputConfig) -> list[RawBatch]:
        if input_config.type == InputKind.M3U:
            return [self._fetch_m3u(input_config)]
        return self._fetch_xtream(input_config)

    def m3u_path(self, input_config: InputConfig) -> Path:
        if input_config.persist:
            return self.inputs_dir / input_config.persist
        return self.inputs_dir / f"{safe_input_name(input_config.name)}.m3u"

    def xtream_dir(self, input_config: InputConfig) -> Path:
        if input_config.persist:
            return self.inputs_dir / input_config.persist
        return self.inputs_dir / safe_input_name(input_config.name)

    def _fetch_m3u(self, input_config: InputConfig) -> RawBatch:
        path = self.m3u_path(input_config)
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise InputError(input_config.name, f"cannot read playlist {path}: {e}") from e
        records = parse_m3u_playlist(text)
        logger.info("[NORMALIZE] Read %s playlist entries for %s from %s", len(records), input_config.name, path)
        return RawBatch(input_name=input_config.name, source_kind=SourceKind.M3U, records=records)

    def _read_json(self, input_config: InputConfig, path: Path) -> list:
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            raise InputError(input_config.name, f"cannot read {path}: {e}") from e
        if not isinstance(data, list):
            raise InputError(input_config.name, f"{path} does not hold a JSON list")
        return data

    def _fetch_xtream(self, input_config: InputConfig) -> list[RawBatch]:
        directory = self.xtream_dir(input_config)
        if not directory.is_dir():
            raise InputError(input_config.name, f"xtream dump directory {directory} does not exist")

        batches = []
        for source_kind, (categories_file, streams_file) in XTREAM_DUMP_FILES.items():
            streams_path = directory / streams_file
            if not streams_path.exists():
                logger.debug("[NORMALIZE] %s: no %s, skipping", input_config.name, streams_file)
                continue
            categories_path = directory / categories_file
            categories = self._read_json(input_config, categories_path) if categories_path.exists() else []
            batches.append(RawBatch(
                input_name=input_config.name,
                source_kind=source_kind,
                records=self._read_json(input_config, streams_path),
                normalizer_options={
                    "base_url": input_config.url,
                    "username": input_config.username or "",
                    "password": input_config.password or "",
                    "categories": _categories_by_id(categories),
                },
            ))
        return batches
