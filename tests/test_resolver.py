from __future__ import annotations

import pytest

from automode_mcp.errors import CycleError
from automode_mcp.features import Feature, FeatureStatus
from automode_mcp.scheduling import (
    analyze,
    are_dependencies_satisfied,
    find_cycles,
    get_blocking_dependencies,
    resolve,
)


def _feature(
    feature_id: str,
    *dependencies: str,
    status: FeatureStatus = FeatureStatus.BACKLOG,
    priority: int | None = None,
) -> Feature:
    return Feature(
        id=feature_id,
        description=f"Implement {feature_id}",
        dependencies=list(dependencies),
        status=status,
        priority=priority,
    )


def test_chain_is_ordered_dependencies_first() -> None:
    features = [_feature("c", "b"), _feature("b", "a"), _feature("a")]

    result = analyze(features)

    assert result.order == ["a", "b", "c"]
    assert result.admissible == ["a"]
    assert result.blocked == {"b": ("a",), "c": ("b",)}
    assert not result.has_cycles


def test_priority_then_creation_order_breaks_ties() -> None:
    features = [
        _feature("first"),
        _feature("urgent", priority=1),
        _feature("second"),
        _feature("late", priority=3),
    ]

    result = analyze(features)

    assert result.order == ["urgent", "first", "second", "late"]
    assert result.admissible == ["urgent", "first", "second", "late"]


def test_missing_dependency_is_reported_and_never_admissible() -> None:
    features = [_feature("d", "ghost"), _feature("e")]

    result = analyze(features)

    assert result.missing == {"d": ("ghost",)}
    assert "d" in result.order
    assert result.admissible == ["e"]


def test_cycle_members_and_downstream_are_not_admissible() -> None:
    features = [
        _feature("a", "b"),
        _feature("b", "a"),
        _feature("c", "a"),
        _feature("e"),
    ]

    result = analyze(features)

    assert result.cycles == [("a", "b")]
    assert result.cyclic_ids == {"a", "b"}
    assert result.admissible == ["e"]
    assert result.order == ["e", "a", "b", "c"]
    assert result.blocked["c"] == ("a",)


def test_self_dependency_is_a_cycle() -> None:
    result = analyze([_feature("solo", "solo")])

    assert result.cycles == [("solo",)]
    assert result.admissible == []


def test_resolve_raises_cycle_error_with_members() -> None:
    with pytest.raises(CycleError) as excinfo:
        resolve([_feature("x", "y"), _feature("y", "x"), _feature("z")])

    assert excinfo.value.feature_ids == {"x", "y"}
    assert "x -> y" in str(excinfo.value)


def test_success_states_unblock_dependents() -> None:
    features = [
        _feature("a", status=FeatureStatus.COMPLETED),
        _feature("b", status=FeatureStatus.VERIFIED),
        _feature("c", "a", "b"),
    ]

    result = analyze(features)

    assert result.admissible == ["c"]
    assert "c" not in result.blocked


@pytest.mark.parametrize(
    "status",
    [
        FeatureStatus.WAITING_APPROVAL,
        FeatureStatus.IN_PROGRESS,
        FeatureStatus.FAILED,
        FeatureStatus.BACKLOG,
    ],
)
def test_unfinished_dependency_blocks(status: FeatureStatus) -> None:
    features = [_feature("a", status=status), _feature("b", "a")]

    result = analyze(features)

    assert "b" not in result.admissible
    assert result.blocked["b"] == ("a",)


def test_only_backlog_features_are_admissible() -> None:
    features = [
        _feature("ready", status=FeatureStatus.READY),
        _feature("running", status=FeatureStatus.IN_PROGRESS),
        _feature("failed", status=FeatureStatus.FAILED),
        _feature("todo"),
    ]

    assert analyze(features).admissible == ["todo"]


def test_find_cycles_ignores_unknown_targets() -> None:
    graph = {"a": ("b", "missing"), "b": ("c",), "c": ("a",), "d": ("d",)}

    assert find_cycles(graph) == [("a", "b", "c"), ("d",)]
    assert find_cycles({"a": ("missing",)}) == []


def test_dependency_helpers() -> None:
    done = _feature("done", status=FeatureStatus.COMPLETED)
    pending = _feature("pending")
    target = _feature("target", "done", "pending", "ghost")
    index = {feature.id: feature for feature in (done, pending, target)}

    assert get_blocking_dependencies(target, index) == ["pending"]
    assert not are_dependencies_satisfied(target, index)
    assert are_dependencies_satisfied(_feature("ok", "done"), [done, pending])
    assert not are_dependencies_satisfied(_feature("lost", "ghost"), [done])
