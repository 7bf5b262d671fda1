from __future__ import annotations

import pytest

from reloader.src.snapshot import ResourceKind, Snapshot, normalize_data


def test_snapshots_with_same_data_are_equal_regardless_of_metadata() -> None:
    first = Snapshot(
        data={"replicas": "3", "mode": "fast"},
        kind=ResourceKind.CONFIG_MAP,
        source="configmap.app.default",
        revision="app@100",
    )
    second = Snapshot(
        data={"mode": "fast", "replicas": "3"},
        kind=ResourceKind.CONFIG_MAP,
        source="configmap.other.default",
        revision="app@200",
    )

    assert first == second
    assert hash(first) == hash(second)


def test_snapshots_with_different_values_are_not_equal() -> None:
    first = Snapshot(data={"replicas": "3"}, kind=ResourceKind.CONFIG_MAP)
    second = Snapshot(data={"replicas": "5"}, kind=ResourceKind.CONFIG_MAP)

    assert first != second


def test_snapshot_with_extra_key_is_not_equal() -> None:
    first = Snapshot(data={"replicas": "3"}, kind=ResourceKind.SECRET)
    second = Snapshot(data={"replicas": "3", "extra": ""}, kind=ResourceKind.SECRET)

    assert first != second


def test_snapshot_is_immutable() -> None:
    source = {"replicas": "3"}
    snapshot = Snapshot(data=source, kind=ResourceKind.CONFIG_MAP)
    source["replicas"] = "5"

    assert snapshot.data["replicas"] == "3"
    with pytest.raises(TypeError):
        snapshot.data["replicas"] = "7"  # type: ignore[index]
    with pytest.raises(AttributeError):
        snapshot.kind = ResourceKind.SECRET  # type: ignore[misc]


def test_digest_is_stable_across_key_order() -> None:
    first = Snapshot(data={"a": "1", "b": "2"}, kind=ResourceKind.CONFIG_MAP)
    second = Snapshot(data={"b": "2", "a": "1"}, kind=ResourceKind.CONFIG_MAP)

    assert first.digest() == second.digest()
    assert len(first.digest()) == 64


def test_repr_does_not_leak_values() -> None:
    snapshot = Snapshot(data={"password": "hunter2"}, kind=ResourceKind.SECRET)

    assert "hunter2" not in repr(snapshot)
    assert "secret" in repr(snapshot)


def test_normalize_data_handles_none_and_non_dict() -> None:
    assert normalize_data(None) == {}
    assert normalize_data(["a"]) == {}
    assert normalize_data({"a": None, "b": 1, 2: "x"}) == {"a": "", "b": "1"}


def test_watch_names_are_stable() -> None:
    assert ResourceKind.CONFIG_MAP.watch_name == "configmap-watch"
    assert ResourceKind.SECRET.watch_name == "secret-watch"
