"""Unit tests for availability probes and their parser."""

from __future__ import annotations

import pytest

from kubephase.models.objects import GroupKind
from kubephase.models.selectors import LabelSelector
from kubephase.objectsets.probing import (
    ConditionProbe,
    ExistsProbe,
    FieldsEqualProbe,
    FieldValueProbe,
    ProbeParseError,
    SelectorProbe,
    parse_probes,
)


def _deployment(generation: int = 2, conditions: list[dict] | None = None, **status: object) -> dict:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web", "generation": generation, "labels": {"app": "web"}},
        "spec": {"replicas": 3},
        "status": {"conditions": conditions or [], **status},
    }


# ---------------------------------------------------------------------------
# Individual probes
# ---------------------------------------------------------------------------


class TestConditionProbe:
    def test_passes_on_matching_current_condition(self) -> None:
        obj = _deployment(conditions=[{"type": "Available", "status": "True", "observedGeneration": 2}])
        assert ConditionProbe("Available", "True").probe(obj) == (True, "")

    def test_missing_condition(self) -> None:
        assert ConditionProbe("Available", "True").probe(_deployment()) == (False, 'missing condition "Available"')

    def test_outdated_condition(self) -> None:
        obj = _deployment(conditions=[{"type": "Available", "status": "True", "observedGeneration": 1}])
        ok, message = ConditionProbe("Available", "True").probe(obj)
        assert not ok
        assert "outdated" in message

    def test_wrong_status(self) -> None:
        obj = _deployment(conditions=[{"type": "Available", "status": "False"}])
        ok, message = ConditionProbe("Available", "True").probe(obj)
        assert not ok
        assert message == 'condition "Available" == "False", want "True"'


class TestFieldProbes:
    def test_fields_equal(self) -> None:
        probe = FieldsEqualProbe("spec.replicas", "status.readyReplicas")
        assert probe.probe(_deployment(readyReplicas=3)) == (True, "")
        assert probe.probe(_deployment(readyReplicas=1)) == (False, '"spec.replicas" != "status.readyReplicas"')
        assert probe.probe(_deployment()) == (False, '"status.readyReplicas" missing')

    def test_field_value(self) -> None:
        probe = FieldValueProbe("status.phase", "Ready")
        assert probe.probe(_deployment(phase="Ready"))[0]
        ok, message = probe.probe(_deployment(phase="Starting"))
        assert not ok
        assert message == "\"status.phase\" == 'Starting', want 'Ready'"

    def test_exists(self) -> None:
        assert ExistsProbe("spec.replicas").probe(_deployment()) == (True, "")
        assert ExistsProbe("spec.paused").probe(_deployment()) == (False, '"spec.paused" missing')


class TestSelectorProbe:
    def test_skips_objects_of_other_kinds(self) -> None:
        probe = SelectorProbe(GroupKind("", "ConfigMap"), ExistsProbe("data.ready"))
        assert probe.probe(_deployment()) == (True, "")

    def test_label_selector_narrows_matches(self) -> None:
        inner = ExistsProbe("status.readyReplicas")
        matching = SelectorProbe(GroupKind("apps", "Deployment"), inner, LabelSelector.from_labels({"app": "web"}))
        other = SelectorProbe(GroupKind("apps", "Deployment"), inner, LabelSelector.from_labels({"app": "db"}))
        assert not matching.probe(_deployment())[0]
        assert other.probe(_deployment())[0]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseProbes:
    def test_combines_messages_of_failing_probes(self) -> None:
        probe = parse_probes(
            [
                {
                    "selector": {"kind": {"group": "apps", "kind": "Deployment"}},
                    "probes": [
                        {"condition": {"type": "Available", "status": "True"}},
                        {"fieldsEqual": {"fieldA": "spec.replicas", "fieldB": "status.readyReplicas"}},
                    ],
                }
            ]
        )
        ok, message = probe.probe(_deployment(readyReplicas=1))
        assert not ok
        assert message == 'missing condition "Available", "spec.replicas" != "status.readyReplicas"'

    def test_empty_probe_list_always_passes(self) -> None:
        assert parse_probes([]).probe(_deployment()) == (True, "")

    @pytest.mark.parametrize(
        ("entry", "match"),
        [
            ({"selector": {"kind": {}}, "probes": []}, "must name a kind"),
            ({"selector": {"kind": {"kind": "Pod"}}, "probes": [{"teleport": {}}]}, "unknown probe type"),
            ({"selector": {"kind": {"kind": "Pod"}}, "probes": [{"fieldValue": {"field": "a"}}]}, "missing"),
            (
                {"selector": {"kind": {"kind": "Pod"}}, "probes": [{"exists": {"field": "a"}, "condition": {}}]},
                "exactly one",
            ),
        ],
    )
    def test_malformed_probes_are_rejected(self, entry: dict, match: str) -> None:
        with pytest.raises(ProbeParseError, match=match):
            parse_probes([entry])
