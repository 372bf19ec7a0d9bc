from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from src.ruler.errors import ConfigError
from src.ruler.services.rule_loader import expand_rule_paths, load_rule_groups, parse_rule_file
from src.ruler.services.rules import AlertingRule, RecordingRule, format_duration, merge_labels, parse_duration

REPO_RULES = str(Path(__file__).resolve().parents[1] / "rules" / "*.yml")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("5m", timedelta(minutes=5)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("250ms", timedelta(milliseconds=250)),
        ("1w2d", timedelta(days=9)),
        ("0", timedelta(0)),
        (0, timedelta(0)),
        (None, timedelta(0)),
    ],
)
def test_parse_duration(raw, expected):
    assert parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["5", "abc", "5 m", "m5", "", "-1m"])
def test_parse_duration_rejects_invalid(raw):
    with pytest.raises(ConfigError):
        parse_duration(raw)


def test_format_duration():
    assert format_duration(timedelta(hours=1, minutes=5)) == "1h5m"
    assert format_duration(timedelta(0)) == "0s"
    assert format_duration(timedelta(milliseconds=1500)) == "1s500ms"


def test_merge_labels_expression_labels_win_and_name_is_dropped():
    merged = merge_labels({"__name__": "up", "instance": "a", "severity": "info"}, {"severity": "critical", "team": "ops"})
    assert merged == {"instance": "a", "severity": "info", "team": "ops"}


def test_shipped_rule_set_loads():
    groups = load_rule_groups([REPO_RULES], timedelta(seconds=15))
    names = {g.name for g in groups}
    assert names == {
        "node_alerts",
        "kubernetes_alerts",
        "aiops_alerts",
        "basic_alerts",
        "node_recording_rules",
        "kubernetes_recording_rules",
        "aiops_recording_rules",
    }
    assert all(g.interval == timedelta(seconds=15) for g in groups)

    by_name = {g.name: g for g in groups}
    cpu = by_name["node_alerts"].rules[0]
    assert isinstance(cpu, AlertingRule)
    assert cpu.name == "HighCPUUsage"
    assert cpu.for_ == timedelta(minutes=5)
    assert cpu.labels == {"severity": "warning"}
    assert "{{ $labels.instance }}" in cpu.annotations["summary"]

    # Same alert name in a different group is fine.
    assert by_name["basic_alerts"].rules[0].name == "HighCPUUsage"

    rec = by_name["node_recording_rules"].rules[0]
    assert isinstance(rec, RecordingRule)
    assert rec.name == "node:cpu:usage_percentage"


def test_group_interval_override_and_order(write_rules):
    path = write_rules(
        """
        groups:
          - name: g
            interval: 1m
            rules:
              - record: job:a:sum
                expr: sum(a)
              - alert: A
                expr: job:a:sum > 1
        """
    )
    (group,) = load_rule_groups([path], timedelta(seconds=15))
    assert group.interval == timedelta(minutes=1)
    assert [r.name for r in group.rules] == ["job:a:sum", "A"]
    assert group.source_file == path


def test_repeated_rule_names_get_distinct_keys(write_rules):
    path = write_rules(
        """
        groups:
          - name: g
            rules:
              - alert: A
                expr: x > 1
              - alert: A
                expr: y > 1
        """
    )
    (group,) = load_rule_groups([path], timedelta(seconds=15))
    assert group.keys == ["A", "A#2"]
    assert len(group.alert_states) == 2


def test_empty_file_has_no_groups(write_rules):
    path = write_rules("")
    assert load_rule_groups([path], timedelta(seconds=15)) == []


@pytest.mark.parametrize(
    "text,fragment",
    [
        ("groups: [", "invalid YAML"),
        ("- a\n- b\n", "top level"),
        ("groups:\n  - name: g\n    rules:\n      - alert: A\n        record: a\n        expr: x\n", "exactly one"),
        ("groups:\n  - name: g\n    rules:\n      - expr: x\n", "exactly one"),
        ("groups:\n  - name: g\n    rules:\n      - alert: A\n        expr: ''\n", "expr"),
        ("groups:\n  - name: g\n    rules:\n      - record: a\n        expr: x\n        for: 1m\n", "'for'"),
        ("groups:\n  - name: g\n    rules:\n      - record: a\n        expr: x\n        annotations: {s: t}\n", "annotations"),
        ("groups:\n  - name: g\n    rules:\n      - record: 'bad name'\n        expr: x\n", "invalid recording rule name"),
        ("groups:\n  - name: g\n    rules:\n      - alert: A\n        expr: x\n        labels: {__x: y}\n", "invalid label name"),
        ("groups:\n  - name: g\n    rules:\n      - alert: A\n        expr: x\n        keep_firing: 1m\n", "keep_firing"),
        ("groups:\n  - name: g\n    rules:\n      - alert: A\n        expr: x\n        for: soon\n", "invalid duration"),
        ("groups:\n  - name: g\n    interval: 0s\n    rules: []\n", "positive"),
    ],
)
def test_invalid_rule_files_raise_config_error(write_rules, text, fragment):
    path = write_rules(text)
    with pytest.raises(ConfigError) as ei:
        load_rule_groups([path], timedelta(seconds=15))
    assert fragment in str(ei.value)
    assert path in str(ei.value)


def test_duplicate_group_name_across_files_rejects_whole_set(write_rules):
    a = write_rules("groups:\n  - name: g\n    rules: []\n", name="a.yml")
    b = write_rules("groups:\n  - name: g\n    rules: []\n", name="b.yml")
    with pytest.raises(ConfigError, match="already defined"):
        load_rule_groups([a, b], timedelta(seconds=15))


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match="cannot read"):
        load_rule_groups([str(tmp_path / "nope.yml")], timedelta(seconds=15))


def test_expand_rule_paths_globs_and_dedupes(write_rules, tmp_path):
    a = write_rules("groups: []\n", name="a.yml")
    b = write_rules("groups: []\n", name="b.yml")
    paths = expand_rule_paths([str(tmp_path / "*.yml"), a, " ", str(tmp_path / "none-*.yml")])
    assert paths == [a, b]


def test_parse_rule_file_stringifies_label_values():
    spec = parse_rule_file("groups:\n  - name: g\n    rules:\n      - alert: A\n        expr: x\n        labels: {page: true, tier: 1}\n")
    assert spec.groups[0].rules[0].labels == {"page": "True", "tier": "1"}
