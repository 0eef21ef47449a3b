from __future__ import annotations

import pytest
from pydantic import ValidationError

from modkeeper.core.modules.models import ManifestModel, RegistrySnapshot, ModuleState, parse_manifest


def test_parse_accepts_dependencies_alias_and_defaults():
    man, err = parse_manifest({"name": "billing", "dependencies": ["core", "db"], "version": " 2.1.0 "})
    assert err is None
    assert man.required_dependencies == ("core", "db")
    assert man.version == "2.1.0"
    assert man.display_name == "billing"
    assert man.optional_dependencies == ()


def test_ordered_sets_drop_duplicates_keep_first():
    man = ManifestModel(name="a", required_dependencies=["c", "b", "c", " ", "b"])
    assert man.required_dependencies == ("c", "b")


def test_conflicts_and_provides_are_sorted_sets():
    man = ManifestModel(name="a", conflicts=["z", "x", "z"], provides=["search", "auth"])
    assert man.conflicts == ("x", "z")
    assert man.provides == ("auth", "search")
    assert man.conflicts_with("x")
    assert man.provides_capability("auth")
    assert not man.provides_capability("billing")


@pytest.mark.parametrize("field", ["dependencies", "optional_dependencies", "conflicts"])
def test_self_reference_rejected(field):
    man, err = parse_manifest({"name": "a", field: ["a"]})
    assert man is None
    assert "itself" in err


def test_required_and_optional_overlap_rejected():
    man, err = parse_manifest({"name": "a", "dependencies": ["b"], "optional_dependencies": ["b"]})
    assert man is None
    assert "both required and optional" in err


def test_unknown_keys_and_bad_names_rejected():
    assert parse_manifest({"name": "a", "entrypoint": "x:y"})[0] is None
    assert parse_manifest({"name": "-leading-dash"})[0] is None
    assert parse_manifest({"name": "has space"})[0] is None
    assert parse_manifest("not a dict")[1] == "manifest is not an object"


def test_manifest_is_immutable():
    man = ManifestModel(name="a")
    with pytest.raises(ValidationError):
        man.version = "9.9.9"  # type: ignore[misc]


def test_dependency_helpers():
    man = ManifestModel(name="a", required_dependencies=["b"], optional_dependencies=["c"])
    assert man.has_dependency("b")
    assert not man.has_dependency("c")
    assert man.has_optional_dependency("c")
    assert man.all_dependencies() == ("b", "c")


def test_snapshot_defaults_and_with_manifest():
    a = ManifestModel(name="a")
    snap = RegistrySnapshot(manifests={"a": a}, states={"a": ModuleState.ENABLED}, revisions={"a": 4})
    assert snap.state("a") is ModuleState.ENABLED
    assert snap.state("ghost") is ModuleState.NOT_INSTALLED
    assert snap.revisions_for(["a", "ghost"]) == {"a": 4, "ghost": 0}

    newer = snap.with_manifest(ManifestModel(name="a", version="2.0.0"))
    assert newer.manifests["a"].version == "2.0.0"
    assert snap.manifests["a"].version == "1.0.0"
