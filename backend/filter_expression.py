"""
Filter Expression Engine

Compiles template-expanded filter text into an immutable predicate tree and
evaluates that tree against channels.

Grammar (keywords are case-insensitive):

    expr       := or_expr
    or_expr    := and_expr ( OR and_expr )*
    and_expr   := not_expr ( AND not_expr )*
    not_expr   := NOT not_expr | primary
    primary    := "(" expr ")" | comparison
    comparison := FIELD "~" STRING | FIELD "=" ( STRING | WORD )

AND binds tighter than OR; both are left-associative and chains of the same
operator are flattened into a single node. Regex operands use Python `re`
syntax and are matched with re.search, so a pattern only covers the whole
field when it carries its own anchors. Inline flags such as (?i) are honored.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from channel import Channel, ChannelKind, ItemField
from errors import FilterSyntaxError, InvalidPatternError, UnknownFieldError

logger = logging.getLogger(__name__)


# =============================================================================
# Tokens
# =============================================================================

class TokenType(str, Enum):
    LPAREN = "("
    RPAREN = ")"
    MATCH = "~"
    EQUALS = "="
    STRING = "string"
    WORD = "word"
    AND = "AND"
    OR = "OR"
    NOT = "NOT"
    END = "end"


KEYWORDS = {"AND": TokenType.AND, "OR": TokenType.OR, "NOT": TokenType.NOT}

_WORD_RE = re.compile(r'[^\s()"~=]+')


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    position: int
    terminated: bool = True  # Only meaningful for STRING


def _read_string(text: str, start: int) -> tuple[Token, int]:
    """Read a double-quoted literal starting at text[start] == '"'."""
    chars = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            # Only \" is an escape; other backslashes belong to the regex.
            chars.append('"' if nxt == '"' else ch + nxt)
            i += 2
            continue
        if ch == '"':
            return Token(TokenType.STRING, "".join(chars), start), i + 1
        chars.append(ch)
        i += 1
    return Token(TokenType.STRING, "".join(chars), start, terminated=False), len(text)


def tokenize(text: str) -> list[Token]:
    tokens = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch == "(":
            tokens.append(Token(TokenType.LPAREN, ch, i))
            i += 1
        elif ch == ")":
            tokens.append(Token(TokenType.RPAREN, ch, i))
            i += 1
        elif ch == "~":
            tokens.append(Token(TokenType.MATCH, ch, i))
            i += 1
        elif ch == "=":
            tokens.append(Token(TokenType.EQUALS, ch, i))
            i += 1
        elif ch == '"':
            token, i = _read_string(text, i)
            tokens.append(token)
        else:
            match = _WORD_RE.match(text, i)
            word = match.group(0)
            keyword = KEYWORDS.get(word.upper())
            tokens.append(Token(keyword or TokenType.WORD, word, i))
            i = match.end()
    tokens.append(Token(TokenType.END, "", len(text)))
    return tokens


# =============================================================================
# Compiled tree
# =============================================================================

class Operator(str, Enum):
    MATCH = "~"
    EQUALS = "="


@dataclass(frozen=True)
class Comparison:
    """Leaf predicate: `field operator operand`."""
    item_field: ItemField
    operator: Operator
    operand: str
    pattern: Optional[re.Pattern] = field(default=None, compare=False, repr=False)

    def to_text(self) -> str:
        escaped = self.operand.replace('"', '\\"')
        return f'{self.item_field.value.capitalize()} {self.operator.value} "{escaped}"'


@dataclass(frozen=True)
class AndNode:
    children: tuple

    def to_text(self) -> str:
        return "(" + " AND ".join(c.to_text() for c in self.children) + ")"


@dataclass(frozen=True)
class OrNode:
    children: tuple

    def to_text(self) -> str:
        return "(" + " OR ".join(c.to_text() for c in self.children) + ")"


@dataclass(frozen=True)
class NotNode:
    child: "Node"

    def to_text(self) -> str:
        return f"NOT {self.child.to_text()}"


Node = Union[Comparison, AndNode, OrNode, NotNode]


@dataclass(frozen=True)
class CompiledFilter:
    """A parsed filter, built once per target and reused for every channel."""
    source: str
    root: Node

    def matches(self, channel: Channel) -> bool:
        return evaluate(self.root, channel)

    def to_text(self) -> str:
        return self.root.to_text()


# =============================================================================
# Parser
# =============================================================================

def _compile_pattern(operand: str) -> re.Pattern:
    try:
        return re.compile(operand)
    except re.error as e:
        raise InvalidPatternError(operand, str(e)) from e


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != TokenType.END:
            self.index += 1
        return token

    def _error(self, message: str, token: Optional[Token] = None) -> FilterSyntaxError:
        token = token or self.current
        return FilterSyntaxError(token.position, message, self.text)

    def parse(self) -> Node:
        if self.current.type == TokenType.END:
            raise self._error("Empty filter expression")
        node = self._or_expr()
        if self.current.type != TokenType.END:
            raise self._error(f"Unexpected '{self.current.value}'")
        return node

    def _or_expr(self) -> Node:
        children = [self._and_expr()]
        while self.current.type == TokenType.OR:
            self._advance()
            children.append(self._and_expr())
        return _combine(OrNode, children)

    def _and_expr(self) -> Node:
        children = [self._not_expr()]
        while self.current.type == TokenType.AND:
            self._advance()
            children.append(self._not_expr())
        return _combine(AndNode, children)

    def _not_expr(self) -> Node:
        if self.current.type == TokenType.NOT:
            self._advance()
            return NotNode(self._not_expr())
        return self._primary()

    def _primary(self) -> Node:
        token = self.current
        if token.type == TokenType.LPAREN:
            self._advance()
            node = self._or_expr()
            if self.current.type != TokenType.RPAREN:
                raise self._error("Expected ')'")
            self._advance()
            return node
        if token.type == TokenType.WORD:
            return self._comparison()
        if token.type == TokenType.END:
            raise self._error("Unexpected end of expression")
        raise self._error(f"Expected field name, found '{token.value}'")

    def _comparison(self) -> Comparison:
        field_token = self._advance()
        item_field = ItemField.lookup(field_token.value)
        if item_field is None:
            raise UnknownFieldError(field_token.value, field_token.position)

        op_token = self._advance()
        if op_token.type == TokenType.MATCH:
            return self._regex_comparison(item_field)
        if op_token.type == TokenType.EQUALS:
            return self._equality_comparison(item_field)
        raise self._error(f"Expected '~' or '=' after field '{field_token.value}'", op_token)

    def _regex_comparison(self, item_field: ItemField) -> Comparison:
        operand = self._advance()
        if operand.type != TokenType.STRING:
            raise self._error("Expected quoted regular expression", operand)
        if not operand.terminated:
            raise InvalidPatternError(operand.value, f"unterminated literal at position {operand.position}")
        return Comparison(item_field, Operator.MATCH, operand.value, _compile_pattern(operand.value))

    def _equality_comparison(self, item_field: ItemField) -> Comparison:
        operand = self._advance()
        if operand.type == TokenType.STRING:
            if not operand.terminated:
                raise self._error("Unterminated string literal", operand)
        elif operand.type != TokenType.WORD:
            raise self._error("Expected value after '='", operand)
        value = operand.value
        if item_field == ItemField.TYPE:
            try:
                value = ChannelKind.parse(value).value
            except ValueError:
                raise self._error(f"Unknown type '{operand.value}'", operand)
        return Comparison(item_field, Operator.EQUALS, value)


def _combine(node_type, children: list) -> Node:
    if len(children) == 1:
        return children[0]
    flat = []
    for child in children:
        if isinstance(child, node_type):
            flat.extend(child.children)
        else:
            flat.append(child)
    return node_type(tuple(flat))


def parse(resolved_text: str) -> CompiledFilter:
    """
    Compile template-expanded filter text.

    Raises:
        FilterSyntaxError: malformed text (UnknownFieldError for bad fields)
        InvalidPatternError: a regex operand does not compile
    """
    root = _Parser(resolved_text).parse()
    logger.debug("[FILTER] Compiled %r -> %s", resolved_text, root.to_text())
    return CompiledFilter(source=resolved_text, root=root)


# =============================================================================
# Evaluator
# =============================================================================

def evaluate(node: Node, channel: Channel) -> bool:
    """Evaluate a compiled tree against one channel. Pure and short-circuiting."""
    if isinstance(node, Comparison):
        value = channel.get_field(node.item_field)
        if node.operator == Operator.MATCH:
            return node.pattern.search(value or "") is not None
        return value == node.operand
    if isinstance(node, AndNode):
        return all(evaluate(child, channel) for child in node.children)
    if isinstance(node, OrNode):
        return any(evaluate(child, channel) for child in node.children)
    if isinstance(node, NotNode):
        return not evaluate(node.child, channel)
    raise TypeError(f"Unknown filter node: {type(node).__name__}")


def collect_captures(node: Node, channel: Channel) -> dict[str, str]:
    """
    Named groups captured by every matching regex comparison in a tree.

    Comparisons under NOT contribute nothing. When several comparisons
    capture the same name, the later one in the expression wins; a group
    that did not participate captures "".
    """
    captures: dict[str, str] = {}
    if isinstance(node, Comparison):
        if node.operator == Operator.MATCH:
            match = node.pattern.search(channel.get_field(node.item_field) or "")
            if match:
                captures.update({name: value or "" for name, value in match.groupdict().items()})
    elif isinstance(node, (AndNode, OrNode)):
        for child in node.children:
            captures.update(collect_captures(child, channel))
    return captures
