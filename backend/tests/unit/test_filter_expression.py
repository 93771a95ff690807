"""
Unit tests for the filter_expression module.

Covers tokenizing, parsing (precedence, flattening, grouping, NOT), compile-time
errors and evaluation against channels.
"""
import pytest

from channel import ChannelKind, ItemField
from errors import FilterSyntaxError, InvalidPatternError, UnknownFieldError
from filter_expression import (
    AndNode,
    Comparison,
    NotNode,
    Operator,
    OrNode,
    TokenType,
    collect_captures,
    evaluate,
    parse,
    tokenize,
)
from template_registry import TemplateRegistry
from tests.fixtures.factories import make_channel


class TestTokenize:
    def test_basic_comparison(self):
        tokens = tokenize('Group ~ "^DE"')
        assert [t.type for t in tokens] == [TokenType.WORD, TokenType.MATCH, TokenType.STRING, TokenType.END]
        assert tokens[2].value == "^DE"

    def test_keywords_case_insensitive(self):
        tokens = tokenize("a and b Or c not d")
        types = [t.type for t in tokens]
        assert types[1] == TokenType.AND
        assert types[3] == TokenType.OR
        assert types[5] == TokenType.NOT

    def test_escaped_quote_in_string(self):
        tokens = tokenize('Name ~ "say \\"hi\\""')
        assert tokens[2].value == 'say "hi"'

    def test_regex_backslashes_kept(self):
        tokens = tokenize('Name ~ "\\d+\\s"')
        assert tokens[2].value == "\\d+\\s"

    def test_unterminated_string_flagged(self):
        tokens = tokenize('Name ~ "abc')
        assert tokens[2].terminated is False

    def test_positions_recorded(self):
        tokens = tokenize('Name = x')
        assert [t.position for t in tokens] == [0, 5, 7, 8]


class TestParse:
    """Tests for parse() tree shape."""

    def test_single_comparison(self):
        compiled = parse('Group ~ "^DE"')
        root = compiled.root
        assert isinstance(root, Comparison)
        assert root.item_field == ItemField.GROUP
        assert root.operator == Operator.MATCH
        assert root.operand == "^DE"

    def test_field_names_case_insensitive(self):
        assert parse('gRoUp ~ "x"').root.item_field == ItemField.GROUP

    def test_and_binds_tighter_than_or(self):
        root = parse('Name = a OR Name = b AND Name = c').root
        assert isinstance(root, OrNode)
        assert len(root.children) == 2
        assert isinstance(root.children[1], AndNode)

    def test_same_operator_chain_flattened(self):
        root = parse('Name = a OR Name = b OR Name = c OR Name = d').root
        assert isinstance(root, OrNode)
        assert len(root.children) == 4

    def test_parentheses_override_precedence(self):
        root = parse('(Name = a OR Name = b) AND Name = c').root
        assert isinstance(root, AndNode)
        assert isinstance(root.children[0], OrNode)

    def test_parenthesized_or_flattens_into_outer_or(self):
        root = parse('Name = a OR (Name = b OR Name = c)').root
        assert isinstance(root, OrNode)
        assert len(root.children) == 3

    def test_not(self):
        root = parse('NOT Group ~ "Adult"').root
        assert isinstance(root, NotNode)
        assert isinstance(root.child, Comparison)

    def test_equality_accepts_bare_word(self):
        root = parse("Input = provider1").root
        assert root.operator == Operator.EQUALS
        assert root.operand == "provider1"

    @pytest.mark.parametrize("value,expected", [
        ("live", "live"), ("LIVE", "live"), ("movie", "movie"), ("video", "movie"), ("Series", "series"),
    ])
    def test_type_values_normalized(self, value, expected):
        assert parse(f"Type = {value}").root.operand == expected

    def test_compilation_is_deterministic(self):
        text = 'Group ~ "a" AND (Name = b OR NOT Title ~ "c")'
        assert parse(text).root == parse(text).root

    def test_to_text_round_trips_structure(self):
        compiled = parse('Name = a OR Name = b AND Group ~ "x"')
        assert parse(compiled.to_text()).root == compiled.root


class TestParseErrors:
    """Malformed filters fail at compile time."""

    def test_unknown_field(self):
        with pytest.raises(UnknownFieldError) as exc_info:
            parse('Genre ~ "Drama"')
        assert exc_info.value.field_name == "Genre"
        assert exc_info.value.position == 0

    def test_unknown_field_position_in_longer_text(self):
        with pytest.raises(UnknownFieldError) as exc_info:
            parse('Group ~ "x" AND Colour = red')
        assert exc_info.value.position == 16

    def test_unknown_field_is_syntax_error(self):
        with pytest.raises(FilterSyntaxError):
            parse('Foo = bar')

    def test_empty_expression(self):
        with pytest.raises(FilterSyntaxError, match="Empty"):
            parse("   ")

    def test_missing_operator(self):
        with pytest.raises(FilterSyntaxError) as exc_info:
            parse('Group "x"')
        assert exc_info.value.position == 6

    def test_dangling_or(self):
        with pytest.raises(FilterSyntaxError):
            parse('Group ~ "x" OR')

    def test_unbalanced_paren(self):
        with pytest.raises(FilterSyntaxError, match="Expected '\\)'"):
            parse('(Group ~ "x"')

    def test_trailing_tokens(self):
        with pytest.raises(FilterSyntaxError, match="Unexpected"):
            parse('Group ~ "x" Name ~ "y"')

    def test_regex_requires_quoted_literal(self):
        with pytest.raises(FilterSyntaxError):
            parse("Group ~ DE")

    def test_invalid_regex(self):
        with pytest.raises(InvalidPatternError) as exc_info:
            parse('Group ~ "([unclosed"')
        assert exc_info.value.pattern == "([unclosed"

    def test_unterminated_regex_literal(self):
        with pytest.raises(InvalidPatternError, match="unterminated"):
            parse('Group ~ "abc')

    def test_unknown_type_value(self):
        with pytest.raises(FilterSyntaxError, match="Unknown type"):
            parse("Type = radio")


class TestEvaluate:
    """Evaluation against channels."""

    COMBINED = 'Group ~ "(?i)^.DE.*Serien.*" OR Group ~ "(?i)^.TR.*Filme.*"'

    def test_combined_regex_matches_de_series(self):
        assert parse(self.COMBINED).matches(make_channel(group="|DE| Serien HD"))

    def test_combined_regex_matches_tr_movies_case_insensitive(self):
        assert parse(self.COMBINED).matches(make_channel(group="|tr| filme action"))

    def test_combined_regex_rejects_other_group(self):
        assert not parse(self.COMBINED).matches(make_channel(group="FR Movies"))

    def test_regex_is_search_not_fullmatch(self):
        assert parse('Name ~ "Sport"').matches(make_channel(name="DE: Sport 1 HD"))

    def test_anchored_regex_respected(self):
        compiled = parse('Name ~ "^Sport$"')
        assert not compiled.matches(make_channel(name="Sport 1"))
        assert compiled.matches(make_channel(name="Sport"))

    def test_equality_is_exact(self):
        compiled = parse('Group = "News"')
        assert compiled.matches(make_channel(group="News"))
        assert not compiled.matches(make_channel(group="News HD"))

    def test_type_predicate(self):
        compiled = parse("Type = movie")
        assert compiled.matches(make_channel(kind=ChannelKind.MOVIE))
        assert not compiled.matches(make_channel(kind=ChannelKind.LIVE))

    def test_series_info_filters_as_series(self):
        assert parse("Type = series").matches(make_channel(kind=ChannelKind.SERIES_INFO))

    def test_input_predicate(self):
        assert parse("Input = prov1").matches(make_channel(input_name="prov1"))

    def test_not(self):
        compiled = parse('NOT Group ~ "(?i)adult"')
        assert compiled.matches(make_channel(group="Kids"))
        assert not compiled.matches(make_channel(group="ADULT"))

    def test_and_short_circuits(self):
        calls = []

        class FieldSpy:
            def get_field(self, item_field):
                calls.append(item_field)
                return "x"

        evaluate(parse('Name = y AND Group = x').root, FieldSpy())
        assert calls == [ItemField.NAME]

    def test_or_short_circuits(self):
        calls = []

        class FieldSpy:
            def get_field(self, item_field):
                calls.append(item_field)
                return "x"

        evaluate(parse('Name = x OR Group = x').root, FieldSpy())
        assert calls == [ItemField.NAME]

    def test_evaluation_is_deterministic(self):
        compiled = parse(self.COMBINED)
        channel = make_channel(group="|DE| Serien HD")
        assert all(compiled.matches(channel) for _ in range(5))


class TestTemplatedFilters:
    """Templated and fully inlined filters select the same channels."""

    def test_all_chan_equivalent_to_inlined(self):
        registry = TemplateRegistry()
        registry.register("DE_CHAN", 'Group ~ "(?i)^.DE.*"')
        registry.register("TR_CHAN", 'Group ~ "(?i)^.TR.*"')
        registry.register("FR_CHAN", 'Group ~ "(?i)^.FR.*"')
        registry.register("ALL_CHAN", "!DE_CHAN! OR !TR_CHAN! OR !FR_CHAN!")

        templated = parse(registry.resolve("!ALL_CHAN!"))
        inlined = parse('Group ~ "(?i)^.DE.*" OR Group ~ "(?i)^.TR.*" OR Group ~ "(?i)^.FR.*"')

        assert isinstance(templated.root, OrNode)
        assert len(templated.root.children) == 3
        assert templated.root == inlined.root

        channels = [
            make_channel(group=g)
            for g in ["|DE| Sport", "-TR- Haber", ".FR. Cinema", "UK News", "DE", "xde", ""]
        ]
        assert [templated.matches(c) for c in channels] == [inlined.matches(c) for c in channels]


class TestCollectCaptures:
    def test_named_groups_from_matching_comparisons(self):
        compiled = parse('Group ~ "^(?P<country>\\w+)" AND Name ~ "(?P<res>HD|SD)$"')
        channel = make_channel(name="Sport HD", group="DE Sport")
        assert collect_captures(compiled.root, channel) == {"country": "DE", "res": "HD"}

    def test_non_matching_comparison_contributes_nothing(self):
        compiled = parse('Group ~ "^(?P<country>DE)" OR Name ~ "(?P<res>HD)$"')
        channel = make_channel(name="Sport HD", group="FR Sport")
        assert collect_captures(compiled.root, channel) == {"res": "HD"}

    def test_later_comparison_wins(self):
        compiled = parse('Group ~ "(?P<x>\\w+)" AND Name ~ "(?P<x>\\w+)"')
        channel = make_channel(name="Name", group="Group")
        assert collect_captures(compiled.root, channel) == {"x": "Name"}

    def test_unset_optional_group_is_empty(self):
        compiled = parse('Name ~ "^(?P<title>\\w+)( (?P<res>HD))?$"')
        assert collect_captures(compiled.root, make_channel(name="Sport")) == {"title": "Sport", "res": ""}

    def test_not_and_equality_ignored(self):
        compiled = parse('NOT Name ~ "(?P<a>Adult)" AND Group = News')
        assert collect_captures(compiled.root, make_channel(name="x", group="News")) == {}
