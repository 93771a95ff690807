"""
Unit tests for the rule_pipeline module.
"""
import re
import threading

import pytest

from channel import ItemField
from config import (
    MappingRuleConfig,
    MapRuleConfig,
    RenameRuleConfig,
    SortRuleConfig,
    WatchRuleConfig,
)
from errors import InvalidPatternError, PipelineCancelled
from rule_pipeline import (
    MappingRule,
    MapRule,
    RenameRule,
    RulePipeline,
    SortRule,
    WatchRule,
    apply_map,
    apply_mapping,
    apply_rename,
    apply_sort,
    apply_watch,
    build_rule,
    expand_captures,
    expand_replacement,
    expand_tags,
)
from template_registry import TemplateRegistry
from tests.fixtures.factories import make_channel, make_channels


def _groups(channels):
    return [c.group for c in channels]


class TestExpandReplacement:
    def test_numbered_groups(self):
        match = re.search(r"(\w+) \| (\w+)", "DE | Sport")
        assert expand_replacement("$2 ($1)", match) == "Sport (DE)"

    def test_braced_and_named_groups(self):
        match = re.search(r"(?P<country>\w+)-(\d+)", "DE-42")
        assert expand_replacement("${country}${2}x", match) == "DE42x"

    def test_group_zero(self):
        match = re.search(r"Sport", "DE Sport")
        assert expand_replacement("[$0]", match) == "[Sport]"

    def test_literal_dollar(self):
        match = re.search(r"(a)", "a")
        assert expand_replacement("$$1", match) == "$1"

    def test_missing_group_inserts_nothing(self):
        match = re.search(r"(a)", "a")
        assert expand_replacement("x$5y${name}z", match) == "xyz"

    def test_non_participating_group(self):
        match = re.search(r"(a)|(b)", "b")
        assert expand_replacement("<$1>", match) == "<>"


class TestRename:
    def test_capture_groups_rewrite_field(self):
        rule = RenameRule(ItemField.GROUP, re.compile(r"^\|(\w+)\| (.*)$"), "$1: $2")
        [channel] = apply_rename([make_channel(group="|DE| Sport")], rule)
        assert channel.group == "DE: Sport"

    def test_only_matched_span_replaced(self):
        rule = RenameRule(ItemField.NAME, re.compile(r"\s*HD$"), "")
        [channel] = apply_rename([make_channel(name="Sport 1 HD")], rule)
        assert channel.name == "Sport 1"

    def test_only_first_match_replaced(self):
        rule = RenameRule(ItemField.NAME, re.compile(r"x"), "y")
        [channel] = apply_rename([make_channel(name="xx")], rule)
        assert channel.name == "yx"

    def test_non_matching_channel_unchanged(self):
        rule = RenameRule(ItemField.GROUP, re.compile(r"^FR"), "France")
        original = make_channel(group="DE Sport")
        [channel] = apply_rename([original], rule)
        assert channel is original

    def test_identity_and_url_preserved(self):
        rule = RenameRule(ItemField.TITLE, re.compile(r".*"), "Renamed")
        original = make_channel(name="A")
        [channel] = apply_rename([original], rule)
        assert channel.title == "Renamed"
        assert channel.channel_id == original.channel_id
        assert channel.url == original.url
        assert channel.name == "A"

    def test_renames_are_cumulative(self):
        first = build_rule(RenameRuleConfig(field="group", pattern="^DE", new_name="Germany"))
        second = build_rule(RenameRuleConfig(field="group", pattern="^Germany (.*)", new_name="$1 (DE)"))
        pipeline = RulePipeline([first, second])
        [channel] = pipeline.apply([make_channel(group="DE Sport")])
        assert channel.group == "Sport (DE)"

    def test_input_not_mutated(self):
        channels = [make_channel(group="DE Sport")]
        rule = RenameRule(ItemField.GROUP, re.compile("DE"), "AT")
        apply_rename(channels, rule)
        assert channels[0].group == "DE Sport"


class TestSort:
    def test_ascending_by_group(self):
        channels = make_channels(["C", "A", "B"])
        assert _groups(apply_sort(channels, SortRule())) == ["A", "B", "C"]

    def test_descending(self):
        channels = make_channels(["C", "A", "B"])
        assert _groups(apply_sort(channels, SortRule(descending=True))) == ["C", "B", "A"]

    def test_stable_for_equal_keys(self):
        channels = [
            make_channel(name="first", group="B"),
            make_channel(name="x", group="A"),
            make_channel(name="second", group="B"),
            make_channel(name="third", group="B"),
        ]
        result = apply_sort(channels, SortRule())
        assert [c.name for c in result if c.group == "B"] == ["first", "second", "third"]

    def test_stable_when_descending(self):
        channels = [make_channel(name=n, group="G") for n in ["1", "2", "3"]]
        result = apply_sort(channels, SortRule(descending=True))
        assert [c.name for c in result] == ["1", "2", "3"]

    def test_is_permutation(self):
        channels = make_channels(["B", "A", "C", "A"])
        result = apply_sort(channels, SortRule())
        assert sorted(c.channel_id for c in result) == sorted(c.channel_id for c in channels)

    def test_sort_by_name(self):
        channels = [make_channel(name=n) for n in ["b", "c", "a"]]
        result = apply_sort(channels, SortRule(item_field=ItemField.NAME))
        assert [c.name for c in result] == ["a", "b", "c"]


class TestMapping:
    def test_allow_list_orders_and_drops(self):
        channels = make_channels(["B", "C", "A", "B"])
        result = apply_mapping(channels, MappingRule(groups=("A", "B")))
        assert _groups(result) == ["A", "B", "B"]

    def test_ties_keep_prior_order(self):
        channels = make_channels(["B", "C", "A", "B"])
        result = apply_mapping(channels, MappingRule(groups=("A", "B")))
        assert [c.name for c in result] == ["A #2", "B #0", "B #3"]

    def test_additive_appends_unmatched(self):
        channels = make_channels(["B", "C", "A", "D", "B"])
        result = apply_mapping(channels, MappingRule(groups=("A", "B"), additive=True))
        assert _groups(result) == ["A", "B", "B", "C", "D"]

    def test_empty_allow_list_passes_through(self):
        channels = make_channels(["B", "C", "A"])
        assert apply_mapping(channels, MappingRule()) == channels

    def test_duplicate_entries_use_first_position(self):
        channels = make_channels(["B", "A"])
        result = apply_mapping(channels, MappingRule(groups=("A", "B", "A")))
        assert _groups(result) == ["A", "B"]


class TestWatch:
    def test_labels_matching_groups(self):
        channels = make_channels(["DE Serien", "DE Sport"])
        result = apply_watch(channels, WatchRule(re.compile("Serien"), "serien"))
        assert result[0].watch_labels == ("serien",)
        assert result[1].watch_labels == ()

    def test_never_removes_or_reorders(self):
        channels = make_channels(["b", "a", "c"])
        result = apply_watch(channels, WatchRule(re.compile("."), "all"))
        assert [c.channel_id for c in result] == [c.channel_id for c in channels]


class TestBuildRule:
    def test_rename(self):
        rule = build_rule(RenameRuleConfig(field="name", pattern="a+", new_name="b"))
        assert isinstance(rule, RenameRule)
        assert rule.item_field == ItemField.NAME

    def test_sort_desc(self):
        rule = build_rule(SortRuleConfig(order="desc"))
        assert rule == SortRule(ItemField.GROUP, descending=True)

    def test_mapping(self):
        rule = build_rule(MappingRuleConfig(groups=["A"], additive=True))
        assert rule == MappingRule(("A",), additive=True)

    def test_watch_label_defaults_to_pattern(self):
        assert build_rule(WatchRuleConfig(pattern="Serien")).label == "Serien"

    def test_invalid_pattern(self):
        with pytest.raises(InvalidPatternError):
            build_rule(RenameRuleConfig(field="group", pattern="(", new_name="x"))


class TestRulePipeline:
    def test_stages_run_in_declared_order(self):
        rules = [
            RenameRule(ItemField.GROUP, re.compile("^X$"), "A"),
            MappingRule(groups=("A", "B")),
            SortRule(descending=True),
        ]
        channels = make_channels(["B", "X", "C"])
        assert _groups(RulePipeline(rules).apply(channels)) == ["B", "A"]

    def test_mapping_before_rename_drops_unrenamed_group(self):
        rules = [
            MappingRule(groups=("A",)),
            RenameRule(ItemField.GROUP, re.compile("^X$"), "A"),
        ]
        channels = make_channels(["X", "A"])
        assert _groups(RulePipeline(rules).apply(channels)) == ["A"]

    def test_no_rules_returns_copy(self):
        channels = make_channels(["A", "B"])
        result = RulePipeline([]).apply(channels)
        assert result == channels
        assert result is not channels

    def test_cancelled_before_first_stage(self):
        event = threading.Event()
        event.set()
        with pytest.raises(PipelineCancelled):
            RulePipeline([SortRule()], name="pl1").apply(make_channels(["A"]), event)

    def test_cancelled_between_batches(self):
        event = threading.Event()
        channels = make_channels(["A"] * 5)

        class CancellingPattern:
            pattern = "A"

            def __init__(self):
                self.calls = 0

            def search(self, value):
                self.calls += 1
                if self.calls == 2:
                    event.set()
                return None

        rule = WatchRule(CancellingPattern(), "w")
        with pytest.raises(PipelineCancelled):
            RulePipeline([rule], batch_size=2).apply(channels, event)
        assert rule.pattern.calls == 2

    def test_unset_event_runs_to_completion(self):
        event = threading.Event()
        result = RulePipeline([SortRule()], batch_size=1).apply(make_channels(["B", "A"]), event)
        assert _groups(result) == ["A", "B"]


def _map_rule(**kwargs):
    return build_rule(MapRuleConfig(**kwargs))


class TestExpandCaptures:
    def test_known_names_replaced(self):
        assert expand_captures("<country> / <quality>", {"country": "DE", "quality": "HD"}) == "DE / HD"

    def test_unknown_names_stay_literal(self):
        assert expand_captures("<country> <other>", {"country": "DE"}) == "DE <other>"


class TestExpandTags:
    def _tags(self, **kwargs):
        rule = _map_rule(pattern='Name ~ "x"', tags=[{"name": "q", **kwargs}])
        return {tag.name: tag for tag in rule.tags}

    def test_joins_and_wraps(self):
        tags = self._tags(captures=["res", "codec"], concat="|", prefix=" [", suffix="]")
        assert expand_tags("<tag:q>", tags, {"res": "FHD", "codec": "HEVC"}) == " [FHD|HEVC]"

    def test_blank_capture_yields_empty(self):
        tags = self._tags(captures=["res"], prefix=" [", suffix="]")
        assert expand_tags("x<tag:q>", tags, {"res": "  "}) == "x"

    def test_missing_capture_drops_affix(self):
        tags = self._tags(captures=["res", "codec"])
        assert expand_tags("<tag:q>", tags, {"res": "FHD"}) is None


class TestMap:
    def test_attributes_from_named_captures(self):
        rule = _map_rule(
            pattern='Name ~ "^(?P<country>[A-Z]{2}): (?P<title>.+)$"',
            attributes={"group": "<country> Live", "name": "<title>"},
        )
        [result] = apply_map([make_channel(name="DE: Das Erste", group="Misc")], rule)

        assert result.group == "DE Live"
        assert result.name == "Das Erste"

    def test_suffix_and_prefix_from_tags(self):
        rule = _map_rule(
            pattern='Name ~ "(?P<res>FHD|HD|SD)$" AND Group ~ "^(?P<country>\\w+)"',
            suffix={"name": "<tag:quality>"},
            prefix={"group": "<tag:cc>"},
            tags=[
                {"name": "quality", "captures": ["res"], "prefix": " [", "suffix": "]"},
                {"name": "cc", "captures": ["country"], "suffix": ": "},
            ],
        )
        [result] = apply_map([make_channel(name="Sport HD", group="DE Sports")], rule)

        assert result.name == "Sport HD [HD]"
        assert result.group == "DE: DE Sports"

    def test_missing_capture_leaves_field_alone(self):
        rule = _map_rule(
            pattern='Name ~ "^(?P<title>\\w+)( (?P<res>HD))?$"',
            suffix={"name": "<tag:both>"},
            tags=[{"name": "both", "captures": ["title", "year"], "concat": " - "}],
        )
        [result] = apply_map([make_channel(name="Sport HD")], rule)
        assert result.name == "Sport HD"

    def test_assignments_copy_fields(self):
        rule = _map_rule(pattern='Group ~ "Serien"', assignments={"title": "group"})
        [result] = apply_map([make_channel(name="Tatort", group="DE Serien")], rule)

        assert result.title == "DE Serien"
        assert result.name == "Tatort"

    def test_assignments_run_after_attributes(self):
        rule = _map_rule(
            pattern='Name ~ "^(?P<show>.+) S\\d+$"',
            attributes={"name": "<show>"},
            assignments={"title": "name"},
        )
        [result] = apply_map([make_channel(name="Tatort S01")], rule)
        assert result.title == "Tatort"

    def test_non_matching_channels_untouched(self):
        rule = _map_rule(pattern='Group ~ "^DE"', attributes={"name": "renamed"})
        channels = make_channels(["FR Films", "TR Dizi"])

        result = apply_map(channels, rule)

        assert result == channels
        assert all(after is before for before, after in zip(channels, result))

    def test_filter_restricts_matches(self):
        rule = _map_rule(
            pattern='Name ~ "(?P<n>\\d+)"',
            filter='Group ~ "^DE"',
            attributes={"name": "Kanal <n>"},
        )
        de, fr = apply_map(
            [make_channel(name="Sport 1", group="DE Sport"), make_channel(name="Sport 2", group="FR Sport")],
            rule,
        )
        assert de.name == "Kanal 1"
        assert fr.name == "Sport 2"

    def test_not_branch_contributes_no_captures(self):
        rule = _map_rule(
            pattern='Group ~ "^DE" AND NOT Name ~ "(?P<n>Adult)"',
            attributes={"name": "[<n>]"},
        )
        [result] = apply_map([make_channel(name="News", group="DE Info")], rule)
        assert result.name == "[<n>]"

    def test_pattern_resolves_templates(self):
        registry = TemplateRegistry()
        registry.register("DE_CHAN", 'Group ~ "(?i)^.DE.*"')
        rule = build_rule(
            MapRuleConfig(pattern="!DE_CHAN!", attributes={"group": "Deutschland"}),
            registry,
        )
        de, tr = apply_map(make_channels(["|DE| Serien", "|TR| Dizi"]), rule)

        assert de.group == "Deutschland"
        assert tr.group == "|TR| Dizi"

    def test_build_rule(self):
        rule = _map_rule(pattern='Name ~ "x"', suffix={"title": "!"}, assignments={"group": "input"})
        assert isinstance(rule, MapRule)
        assert rule.suffix == ((ItemField.TITLE, "!"),)
        assert rule.assignments == ((ItemField.GROUP, ItemField.INPUT),)

    def test_runs_in_pipeline(self):
        pipeline = RulePipeline([
            _map_rule(pattern='Name ~ "^(?P<c>[A-Z]{2}) "', attributes={"group": "<c>"}),
            build_rule(SortRuleConfig()),
        ])
        result = pipeline.apply([make_channel(name="TR Show"), make_channel(name="DE Show")])
        assert _groups(result) == ["DE", "TR"]
