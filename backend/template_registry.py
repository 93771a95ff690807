"""
Filter Template Registry

Stores named, reusable filter fragments and expands `!NAME!` references in
filter text before the text is parsed. Expansion is textual: a fragment is
spliced in verbatim, so `!A! AND x` with A = `p OR q` reads `p OR q AND x`.
Anything inside a double-quoted literal is never touched, which keeps regex
patterns such as "^!important" intact.

Expansion is bounded: a reference chain that revisits a name, or nests deeper
than max_depth, is a configuration error naming the chain.
"""
import logging
import re
from typing import Iterator, Optional

from errors import (
    ConfigurationError,
    DuplicateTemplateError,
    TemplateExpansionError,
    UnresolvedTemplateError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 16

TEMPLATE_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
TEMPLATE_REF_RE = re.compile(r"!([A-Za-z0-9_]+)!")


def iter_segments(text: str) -> Iterator[tuple[bool, str]]:
    """
    Split text into (is_literal, segment) pieces.

    A literal is a double-quoted string including its quotes; a backslash
    escapes the next character. An unterminated literal runs to the end of
    the text (the parser reports it).
    """
    start = 0
    i = 0
    length = len(text)
    while i < length:
        if text[i] == '"':
            if i > start:
                yield False, text[start:i]
            j = i + 1
            while j < length and text[j] != '"':
                j += 2 if text[j] == "\\" else 1
            end = min(j + 1, length)
            yield True, text[i:end]
            start = i = end
        else:
            i += 1
    if start < length:
        yield False, text[start:]


class TemplateRegistry:
    """
    Named filter fragments.

    Usage:
        registry = TemplateRegistry()
        registry.register("DE_CHAN", 'Group ~ "^DE.*"')
        registry.validate()
        registry.freeze()
        text = registry.resolve("!DE_CHAN! OR Group ~ \"^FR\"")
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        if max_depth < 1:
            raise ConfigurationError("Template expansion depth must be at least 1")
        self.max_depth = max_depth
        self._templates: dict[str, str] = {}
        self._frozen = False

    def __contains__(self, name: str) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    @property
    def names(self) -> list[str]:
        return list(self._templates)

    def get(self, name: str) -> Optional[str]:
        return self._templates.get(name)

    def register(self, name: str, fragment: str) -> None:
        """Add a template. Names are unique and limited to [A-Za-z0-9_]."""
        if self._frozen:
            raise RuntimeError("Template registry is frozen")
        if not name or not TEMPLATE_NAME_RE.match(name):
            raise ConfigurationError(f"Invalid template name '{name}'")
        if name in self._templates:
            raise DuplicateTemplateError(name)
        self._templates[name] = fragment.strip()
        logger.debug("[TEMPLATES] Registered template %s", name)

    def freeze(self) -> None:
        """Disallow further registration; the registry is then safe to share."""
        self._frozen = True

    def validate(self) -> None:
        """Resolve every template once so cycles and dangling references fail at load time."""
        for name in self._templates:
            self._expand(f"!{name}!", ())
        logger.info("[TEMPLATES] Validated %s templates", len(self._templates))

    def resolve(self, expression_text: str) -> str:
        """Return expression_text with every template reference expanded."""
        return self._expand(expression_text, ())

    def _expand(self, text: str, chain: tuple) -> str:
        parts = []
        for is_literal, segment in iter_segments(text):
            if is_literal:
                parts.append(segment)
            else:
                parts.append(TEMPLATE_REF_RE.sub(lambda m: self._substitute(m.group(1), chain), segment))
        return "".join(parts)

    def _substitute(self, name: str, chain: tuple) -> str:
        if name in chain:
            raise TemplateExpansionError(chain + (name,), "Cyclic template reference")
        if len(chain) >= self.max_depth:
            raise TemplateExpansionError(
                chain + (name,), f"Template expansion exceeds depth {self.max_depth}"
            )
        fragment = self._templates.get(name)
        if fragment is None:
            raise UnresolvedTemplateError(name, chain)
        return self._expand(fragment, chain + (name,))
