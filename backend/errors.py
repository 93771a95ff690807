"""
Catalog pipeline error taxonomy.

ConfigurationError and its subclasses are raised while loading a configuration
unit and abort that load before any processing starts. RecordError covers a
single malformed provider record: the record is skipped and counted. TargetError
wraps a failure confined to one output target.
"""
from typing import Optional, Sequence


class CatalogError(Exception):
    """Base class for all catalog pipeline errors."""


# =============================================================================
# Configuration errors
# =============================================================================

class ConfigurationError(CatalogError):
    """A configuration unit is invalid and cannot be loaded."""


class DuplicateTemplateError(ConfigurationError):
    """A template name was registered twice."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Template '{name}' is already defined")


class UnresolvedTemplateError(ConfigurationError):
    """A filter references a template that was never registered."""

    def __init__(self, name: str, chain: Sequence[str] = ()):
        self.name = name
        self.chain = list(chain)
        where = f" (via {' -> '.join(self.chain)})" if self.chain else ""
        super().__init__(f"Unknown template reference '!{name}!'{where}")


class TemplateExpansionError(ConfigurationError):
    """Template expansion is cyclic or nests deeper than the configured bound."""

    def __init__(self, chain: Sequence[str], reason: str):
        self.chain = list(chain)
        self.reason = reason
        super().__init__(f"{reason}: {' -> '.join(self.chain)}")


class FilterSyntaxError(ConfigurationError):
    """A filter expression is malformed."""

    def __init__(self, position: int, message: str, text: Optional[str] = None):
        self.position = position
        self.message = message
        self.text = text
        super().__init__(f"Syntax error at position {position}: {message}")


class UnknownFieldError(FilterSyntaxError):
    """A filter comparison names a field the channel model does not have."""

    def __init__(self, field_name: str, position: int):
        self.field_name = field_name
        super().__init__(position, f"Unknown field '{field_name}'")


class InvalidPatternError(ConfigurationError):
    """A regular expression did not compile."""

    def __init__(self, pattern: str, message: str):
        self.pattern = pattern
        self.message = message
        super().__init__(f"Invalid pattern '{pattern}': {message}")


class UnknownRuleParameterError(ConfigurationError):
    """A rule declares a parameter or value the rule kind does not accept."""

    def __init__(self, rule_kind: str, parameter: str):
        self.rule_kind = rule_kind
        self.parameter = parameter
        super().__init__(f"Unknown parameter '{parameter}' for {rule_kind} rule")


# =============================================================================
# Record errors
# =============================================================================

class RecordError(CatalogError):
    """A single raw provider record could not be used."""


class MalformedRecordError(RecordError):
    """A raw record lacks a field the normalizer requires."""

    def __init__(self, reason: str, record: Optional[dict] = None):
        self.reason = reason
        self.record = record
        super().__init__(reason)


# =============================================================================
# Target errors
# =============================================================================

class TargetError(CatalogError):
    """A failure isolated to one output target."""

    def __init__(self, target_name: str, cause: BaseException):
        self.target_name = target_name
        self.cause = cause
        super().__init__(f"Target '{target_name}' failed: {cause}")


class PipelineCancelled(CatalogError):
    """The operator aborted the run."""


# =============================================================================
# Input errors
# =============================================================================

class InputError(CatalogError):
    """An input's raw data could not be obtained or decoded."""

    def __init__(self, input_name: str, message: str):
        self.input_name = input_name
        super().__init__(f"Input '{input_name}': {message}")
