"""Tests for filter specs, due-date buckets and grouping."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from bugsync.filters import (
    VALID_DIMENSIONS,
    apply_filters,
    group_bugs,
    matches_due_bucket,
    normalize_filter_spec,
)
from bugsync.models import Bug, Sprint
from tests.conftest import BUG_DOCS, NOW

FEED_ORDER = ["b1", "b2", "b4", "b3"]


@pytest.fixture
def bugs() -> list[Bug]:
    return [Bug.from_document(doc_id, BUG_DOCS[doc_id]) for doc_id in FEED_ORDER]


def _ids(bugs: list[Bug]) -> list[str]:
    return [b.id for b in bugs]


class TestNormalizeFilterSpec:
    def test_inactive_dimensions_dropped(self) -> None:
        spec = normalize_filter_spec({"status": "all", "severity": None, "search": "  ", "assignee": ""})
        assert spec == {}

    def test_tags_from_comma_string(self) -> None:
        assert normalize_filter_spec({"tags": "ui, auth,ui"}) == {"tags": ("ui", "auth")}

    def test_tags_from_list(self) -> None:
        assert normalize_filter_spec({"tags": ["perf", "", "perf"]}) == {"tags": ("perf",)}

    def test_all_clears_tags_and_search(self) -> None:
        assert normalize_filter_spec({"tags": "all", "search": "all"}) == {}
        assert normalize_filter_spec({"tags": ["all", "ui"]}) == {"tags": ("ui",)}

    def test_empty_tags_dropped(self) -> None:
        assert normalize_filter_spec({"tags": []}) == {}

    def test_search_trimmed(self) -> None:
        assert normalize_filter_spec({"search": "  crash "}) == {"search": "crash"}

    def test_unknown_dimension(self) -> None:
        with pytest.raises(ValueError, match="Unknown filter dimension"):
            normalize_filter_spec({"colour": "red"})

    def test_invalid_due_bucket(self) -> None:
        with pytest.raises(ValueError, match="Invalid due bucket"):
            normalize_filter_spec({"due": "yesterday"})

    def test_non_string_value(self) -> None:
        with pytest.raises(ValueError, match="must be a string"):
            normalize_filter_spec({"status": 3})


class TestMatchesDueBucket:
    def test_overdue_is_any_past_instant(self) -> None:
        assert matches_due_bucket(datetime(2026, 3, 10, 11, tzinfo=UTC), "overdue", NOW)
        assert not matches_due_bucket(datetime(2026, 3, 10, 13, tzinfo=UTC), "overdue", NOW)

    def test_today_is_calendar_day(self) -> None:
        assert matches_due_bucket(datetime(2026, 3, 10, 0, tzinfo=UTC), "today", NOW)
        assert matches_due_bucket(datetime(2026, 3, 10, 23, 59, tzinfo=UTC), "today", NOW)
        assert not matches_due_bucket(datetime(2026, 3, 11, tzinfo=UTC), "today", NOW)

    def test_week_starts_monday(self) -> None:
        assert matches_due_bucket(datetime(2026, 3, 9, tzinfo=UTC), "this_week", NOW)
        assert matches_due_bucket(datetime(2026, 3, 15, 23, tzinfo=UTC), "this_week", NOW)
        assert not matches_due_bucket(datetime(2026, 3, 8, 23, tzinfo=UTC), "this_week", NOW)
        assert not matches_due_bucket(datetime(2026, 3, 16, tzinfo=UTC), "this_week", NOW)

    def test_missing_due_date(self) -> None:
        assert matches_due_bucket(None, "no_due_date", NOW)
        assert matches_due_bucket(None, "all", NOW)
        assert not matches_due_bucket(None, "overdue", NOW)

    def test_unknown_bucket(self) -> None:
        with pytest.raises(ValueError, match="Unknown due bucket"):
            matches_due_bucket(NOW, "someday", NOW)


class TestApplyFilters:
    def test_empty_spec_returns_all_in_order(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {}, now=NOW)) == FEED_ORDER
        assert _ids(apply_filters(bugs, None, now=NOW)) == FEED_ORDER

    def test_all_is_no_constraint(self, bugs: list[Bug]) -> None:
        everything = dict.fromkeys(sorted(VALID_DIMENSIONS), "all")
        assert len(everything) == 11
        assert _ids(apply_filters(bugs, everything, now=NOW)) == FEED_ORDER
        assert _ids(apply_filters(bugs, normalize_filter_spec(everything), now=NOW)) == FEED_ORDER

    def test_bare_string_tag_is_one_tag(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {"tags": "perf"}, now=NOW)) == ["b4"]
        assert _ids(apply_filters(bugs, {"tags": "ul"}, now=NOW)) == []

    def test_exact_dimensions(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {"status": "Open"}, now=NOW)) == ["b1"]
        assert _ids(apply_filters(bugs, {"assignee": "alice@example.com"}, now=NOW)) == ["b1", "b4"]
        assert _ids(apply_filters(bugs, {"sprint": "s1"}, now=NOW)) == ["b1", "b3"]
        assert _ids(apply_filters(bugs, {"environment": "Production"}, now=NOW)) == ["b1", "b4"]

    def test_missing_field_never_matches(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {"category": "UI"}, now=NOW)) == ["b1"]
        assert _ids(apply_filters(bugs, {"reporter": "carol@example.com"}, now=NOW)) == ["b1", "b4"]

    def test_tags_intersect(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {"tags": ["ui"]}, now=NOW)) == ["b1"]
        assert _ids(apply_filters(bugs, {"tags": ["perf", "export"]}, now=NOW)) == ["b2", "b4"]
        assert _ids(apply_filters(bugs, {"tags": []}, now=NOW)) == FEED_ORDER

    def test_search_title_description_and_short_id(self, bugs: list[Bug]) -> None:
        assert _ids(apply_filters(bugs, {"search": "CRASH"}, now=NOW)) == ["b2"]
        assert _ids(apply_filters(bugs, {"search": "safari"}, now=NOW)) == ["b1"]
        assert _ids(apply_filters(bugs, {"search": "1004"}, now=NOW)) == ["b4"]

    @pytest.mark.parametrize(
        ("bucket", "expected"),
        [
            ("overdue", ["b1"]),
            ("today", ["b2"]),
            ("this_week", ["b2", "b4"]),
            ("no_due_date", ["b3"]),
        ],
    )
    def test_due_buckets(self, bugs: list[Bug], bucket: str, expected: list[str]) -> None:
        assert _ids(apply_filters(bugs, {"due": bucket}, now=NOW)) == expected

    def test_dimensions_combine(self, bugs: list[Bug]) -> None:
        spec = {"assignee": "alice@example.com", "due": "this_week"}
        assert _ids(apply_filters(bugs, spec, now=NOW)) == ["b4"]

    def test_now_moves_buckets(self, bugs: list[Bug]) -> None:
        later = datetime(2026, 3, 11, 12, tzinfo=UTC)
        assert _ids(apply_filters(bugs, {"due": "overdue"}, now=later)) == ["b1", "b2"]

    def test_input_not_mutated(self, bugs: list[Bug]) -> None:
        original = list(bugs)
        apply_filters(bugs, {"status": "Open"}, now=NOW)
        assert bugs == original


class TestGroupBugs:
    def test_none(self, bugs: list[Bug]) -> None:
        groups = group_bugs(bugs, "none")
        assert len(groups) == 1
        assert groups[0].label == "All Bugs"
        assert groups[0].count == 4

    def test_daily(self, bugs: list[Bug]) -> None:
        groups = group_bugs(bugs, "daily")
        assert [g.key for g in groups] == ["2026-03-09", "2026-03-08", "2026-03-01", "2026-02-20"]
        assert groups[0].label == "Mar 09, 2026"

    def test_weekly(self, bugs: list[Bug]) -> None:
        groups = group_bugs(bugs, "weekly")
        assert [g.key for g in groups] == ["2026-W11", "2026-W10", "2026-W09", "2026-W08"]
        assert groups[0].label == "Week 11, 2026"

    def test_monthly(self, bugs: list[Bug]) -> None:
        groups = group_bugs(bugs, "monthly")
        assert [(g.label, g.count) for g in groups] == [("March 2026", 3), ("February 2026", 1)]

    def test_sprint(self, bugs: list[Bug]) -> None:
        sprints = [Sprint(id="s1", name="Sprint 1"), Sprint(id="s2", name="Sprint 2")]
        groups = group_bugs(bugs, "sprint", sprints=sprints)
        assert [(g.key, [b.id for b in g.bugs]) for g in groups] == [
            ("s1", ["b1", "b3"]),
            ("unassigned", ["b2", "b4"]),
        ]

    def test_unknown_sprint_is_unassigned(self) -> None:
        groups = group_bugs([Bug(id="x", sprint_id="gone")], "sprint", sprints=[])
        assert [g.key for g in groups] == ["unassigned"]

    def test_undated_bug(self) -> None:
        groups = group_bugs([Bug(id="x")], "daily")
        assert (groups[0].key, groups[0].label) == ("unknown", "No date")

    def test_invalid(self, bugs: list[Bug]) -> None:
        with pytest.raises(ValueError, match="Invalid group_by"):
            group_bugs(bugs, "yearly")
