"""
Configuration models and loaders.

Two layers:
- AppSettings: process settings from the environment / .env (pydantic-settings).
- CatalogConfig: the catalog document (templates, sources, inputs, targets,
  rules) validated with pydantic and read from YAML or JSON.

Validation problems are raised as ConfigurationError subclasses so a bad
document is rejected at load time with an addressable message.
"""
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from channel import RENAMEABLE_FIELDS, ItemField
from errors import ConfigurationError, UnknownRuleParameterError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))


class AppSettings(BaseSettings):
    """Process settings from environment (for container config)."""
    config_dir: str = str(CONFIG_DIR)
    output_dir: str = ""  # Empty means <config_dir>/output
    max_workers: int = 4  # Targets processed concurrently
    template_max_depth: int = 16
    pipeline_batch_size: int = 5000  # Channels between cancellation checks
    log_level: str = "INFO"
    journal_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def resolved_output_dir(self) -> Path:
        return Path(self.output_dir) if self.output_dir else Path(self.config_dir) / "output"


# In-memory cache of settings
_cached_settings: AppSettings | None = None


def get_settings() -> AppSettings:
    """Get the current process settings."""
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = AppSettings()
        logger.debug("[CONFIG] Loaded settings: %s", _cached_settings.model_dump())
    return _cached_settings


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None


# =============================================================================
# Catalog document
# =============================================================================

class InputKind(str, Enum):
    M3U = "m3u"
    XTREAM = "xtream"


class OutputKind(str, Enum):
    M3U = "m3u"
    XTREAM = "xtream"
    STRM = "strm"


class TemplateConfig(BaseModel):
    name: str
    value: str


class TargetOptions(BaseModel):
    """Writer options; each writer reads the flags that apply to it."""
    model_config = ConfigDict(extra="forbid")

    ignore_logo: bool = False
    # strm
    underscore_whitespace: bool = False
    cleanup: bool = False
    kodi_style: bool = False
    # xtream
    xtream_skip_live_direct_source: bool = False
    xtream_skip_video_direct_source: bool = False
    xtream_skip_series_direct_source: bool = False


MAP_TAG_RE = re.compile(r"<tag:(.*?)>")


def _renameable_field(value: str) -> str:
    item_field = ItemField.lookup(value)
    if item_field not in RENAMEABLE_FIELDS:
        allowed = ", ".join(f.value for f in RENAMEABLE_FIELDS)
        raise ValueError(f"field must be one of: {allowed}")
    return item_field.value


class RenameRuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["rename"] = "rename"
    field: str
    pattern: str
    new_name: str

    @field_validator("field")
    @classmethod
    def check_field(cls, value: str) -> str:
        return _renameable_field(value)


class SortRuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["sort"] = "sort"
    field: str = "group"
    order: Literal["asc", "desc"] = "asc"

    @field_validator("field")
    @classmethod
    def check_field(cls, value: str) -> str:
        return _renameable_field(value)


class MappingRuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["mapping"] = "mapping"
    groups: list[str] = Field(default_factory=list)
    additive: bool = False  # Keep unmatched channels after the mapped ones


class WatchRuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["watch"] = "watch"
    pattern: str
    label: Optional[str] = None


class MapTagConfig(BaseModel):
    """`<tag:NAME>` placeholder built from captured values."""
    model_config = ConfigDict(extra="forbid")

    name: str
    captures: list[str]
    concat: str = ""
    prefix: str = ""
    suffix: str = ""


class MapRuleConfig(BaseModel):
    """
    Capture-driven field rewriting.

    pattern (and the optional filter) are filter expressions; named groups
    from the pattern's regexes feed `<name>` placeholders in attributes and
    `<tag:NAME>` placeholders in prefix/suffix. assignments copy one field
    into another.
    """
    model_config = ConfigDict(extra="forbid")

    type: Literal["map"] = "map"
    pattern: str
    filter: Optional[str] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    prefix: dict[str, str] = Field(default_factory=dict)
    suffix: dict[str, str] = Field(default_factory=dict)
    assignments: dict[str, str] = Field(default_factory=dict)
    tags: list[MapTagConfig] = Field(default_factory=list)

    @field_validator("attributes", "prefix", "suffix", "assignments")
    @classmethod
    def check_fields(cls, value: dict[str, str]) -> dict[str, str]:
        return {_renameable_field(key): text for key, text in value.items()}

    @field_validator("assignments")
    @classmethod
    def check_sources(cls, value: dict[str, str]) -> dict[str, str]:
        for source in value.values():
            if ItemField.lookup(source) is None:
                raise ValueError(f"unknown assignment source field '{source}'")
        return {key: ItemField.lookup(source).value for key, source in value.items()}

    @model_validator(mode="after")
    def check_tags(self) -> "MapRuleConfig":
        declared = {tag.name for tag in self.tags}
        for text in list(self.prefix.values()) + list(self.suffix.values()):
            for name in MAP_TAG_RE.findall(text):
                if name not in declared:
                    raise ValueError(f"undeclared tag '{name}'")
        return self


RuleConfig = Annotated[
    Union[RenameRuleConfig, SortRuleConfig, MappingRuleConfig, WatchRuleConfig, MapRuleConfig],
    Field(discriminator="type"),
]


class LegacyRename(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str
    pattern: str
    new_name: str

    @field_validator("field")
    @classmethod
    def check_field(cls, value: str) -> str:
        return _renameable_field(value)


class LegacySortOrder(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order: Literal["asc", "desc"] = "asc"


class LegacySort(BaseModel):
    """`sort: {groups: {order: asc}}` shorthand."""
    model_config = ConfigDict(extra="forbid")

    groups: LegacySortOrder = Field(default_factory=LegacySortOrder)


class TargetConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    filename: Optional[str] = None
    enabled: bool = True
    type: OutputKind = OutputKind.M3U
    filter: Optional[str] = None
    options: TargetOptions = Field(default_factory=TargetOptions)
    rules: Optional[list[RuleConfig]] = None
    # Shorthand keys, expanded in the order rename -> sort -> mapping -> watch
    rename: Optional[list[LegacyRename]] = None
    sort: Optional[LegacySort] = None
    mapping: Optional[list[str]] = None
    mapping_additive: bool = False
    watch: Optional[list[str]] = None

    @field_validator("options", mode="before")
    @classmethod
    def options_default(cls, value):
        return {} if value is None else value

    @model_validator(mode="after")
    def check_target(self) -> "TargetConfig":
        if not self.name:
            if not self.filename:
                raise ValueError("target requires a name or a filename")
            self.name = self.filename
        has_shorthand = any(v is not None for v in (self.rename, self.sort, self.mapping, self.watch))
        if self.rules is not None and has_shorthand:
            raise ValueError("target declares both 'rules' and rename/sort/mapping/watch shorthand")
        return self

    def ordered_rules(self) -> list:
        """The target's rule list in execution order."""
        if self.rules is not None:
            return list(self.rules)
        rules = []
        for rename in self.rename or []:
            rules.append(RenameRuleConfig(field=rename.field, pattern=rename.pattern, new_name=rename.new_name))
        if self.sort is not None:
            rules.append(SortRuleConfig(field="group", order=self.sort.groups.order))
        if self.mapping is not None:
            rules.append(MappingRuleConfig(groups=self.mapping, additive=self.mapping_additive))
        for pattern in self.watch or []:
            rules.append(WatchRuleConfig(pattern=pattern))
        return rules


class InputConfig(BaseModel):
    name: Optional[str] = None
    type: InputKind = InputKind.M3U
    enabled: bool = True
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    persist: Optional[str] = None

    @model_validator(mode="after")
    def default_name(self) -> "InputConfig":
        if not self.name:
            self.name = self.url
        return self


class SourceConfig(BaseModel):
    inputs: list[InputConfig] = Field(default_factory=list)
    targets: list[TargetConfig] = Field(default_factory=list)


class CatalogConfig(BaseModel):
    templates: list[TemplateConfig] = Field(default_factory=list)
    sources: list[SourceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_target_names(self) -> "CatalogConfig":
        seen = set()
        for source in self.sources:
            for target in source.targets:
                if target.name in seen:
                    raise ValueError(f"duplicate target name '{target.name}'")
                seen.add(target.name)
        return self


# =============================================================================
# Loading
# =============================================================================

_RULE_LOCATIONS = {"rules", "rename", "sort", "mapping", "watch"}


def _to_configuration_error(error: ValidationError) -> ConfigurationError:
    """Turn a pydantic error into the most specific ConfigurationError."""
    for detail in error.errors():
        loc = [str(part) for part in detail.get("loc", ())]
        if detail.get("type") == "extra_forbidden" and _RULE_LOCATIONS.intersection(loc):
            rule_kind = next(part for part in loc if part in _RULE_LOCATIONS)
            if rule_kind == "rules":
                # loc: ..., "rules", <index>, <rule type>, <parameter>
                idx = loc.index("rules")
                rule_kind = loc[idx + 2] if len(loc) > idx + 3 else rule_kind
            return UnknownRuleParameterError(rule_kind, loc[-1])
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return ConfigurationError(f"Invalid configuration at '{location}': {first.get('msg')}")


def parse_catalog_config(data: dict) -> CatalogConfig:
    """Validate an already-parsed catalog document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Catalog configuration must be a mapping")
    try:
        return CatalogConfig.model_validate(data)
    except ValidationError as e:
        raise _to_configuration_error(e) from e


def load_catalog_config(path: str | Path) -> CatalogConfig:
    """Read a catalog document from a .yml/.yaml or .json file."""
    path = Path(path)
    logger.info("[CONFIG] Loading catalog configuration from %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse configuration file {path}: {e}") from e

    config = parse_catalog_config(data)
    logger.info(
        "[CONFIG] Loaded %s templates, %s sources, %s targets",
        len(config.templates),
        len(config.sources),
        sum(len(s.targets) for s in config.sources),
    )
    return config
