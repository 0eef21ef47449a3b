from __future__ import annotations

import json
import threading

import pytest

from modkeeper.core.errors import (
    CircularDependencyError,
    ConcurrentModificationError,
    ConflictError,
    DependencyError,
    LifecycleHookError,
    LockTimeoutError,
    ManifestError,
    StateTransitionError,
    UnknownModuleError,
)
from modkeeper.core.modules.lifecycle import LifecycleHooks
from modkeeper.core.modules.models import ModuleState
from modkeeper.core.ops_log import OpsLogger

from .helpers.fakes import FailingStore, RecordingHooks, build_system, make_manifest


# ---- install / remove ----
def test_install_transitions_and_publishes(chain_system):
    res = chain_system.manager.install("core")
    assert res.ok and res.changed and res.state is ModuleState.INSTALLED
    assert chain_system.manager.state("core") is ModuleState.INSTALLED
    name, payload = chain_system.publisher.events[-1]
    assert name == "module.installed"
    assert payload == {"module": "core", "state": "installed", "version": "1.0.0", "forced": False, "warnings": []}


def test_install_unknown_module():
    sys_ = build_system(make_manifest("a"))
    with pytest.raises(UnknownModuleError) as ei:
        sys_.manager.install("ghost")
    assert ei.value.code == "module_not_found"
    assert "ghost" in ei.value.user_message


def test_install_twice_is_a_state_error(chain_system):
    chain_system.manager.install("core")
    with pytest.raises(StateTransitionError):
        chain_system.manager.install("core")


def test_install_with_unresolvable_dependency_needs_force():
    sys_ = build_system(make_manifest("a", requires=["ghost", "b"]), make_manifest("b"))
    with pytest.raises(DependencyError) as ei:
        sys_.manager.install("a")
    assert ei.value.blocking == ["ghost"]
    assert "ghost" in str(ei.value)
    assert sys_.registry.entry("a") is None

    res = sys_.manager.install("a", force=True)
    assert res.state is ModuleState.INSTALLED
    assert res.warnings and "ghost" in res.warnings[0]
    assert sys_.publisher.events[-1][1]["forced"] is True


def test_cycle_is_fatal_even_with_force():
    sys_ = build_system(make_manifest("a", requires=["b"]), make_manifest("b", requires=["a"]))
    with pytest.raises(CircularDependencyError) as ei:
        sys_.manager.install("a", force=True)
    assert ei.value.module == "a"
    assert sys_.registry.list() == []


def test_module_joining_cycle_through_cross_edge_is_rejected():
    sys_ = build_system(
        make_manifest("a", requires=["b", "d"]),
        make_manifest("b", requires=["c"]),
        make_manifest("c", requires=["a"]),
        make_manifest("d", requires=["c"]),
    )
    for force in (False, True):
        with pytest.raises(CircularDependencyError) as ei:
            sys_.manager.install("d", force=force)
        assert ei.value.module == "d"
        assert ei.value.cycles == [["d", "c", "a"]]
    assert sys_.registry.list() == []


def test_install_then_remove_round_trip(chain_system):
    before = chain_system.registry.list()
    chain_system.manager.install("extra")
    chain_system.manager.remove("extra")
    assert chain_system.registry.list() == before
    assert chain_system.registry.entry("extra") is None
    assert chain_system.manager.state("extra") is ModuleState.NOT_INSTALLED
    assert chain_system.publisher.names() == ["module.installed", "module.removed"]


def test_remove_blocked_by_installed_dependent(chain_system):
    m = chain_system.manager
    m.install("core")
    m.install("db")
    with pytest.raises(DependencyError) as ei:
        m.remove("core")
    assert ei.value.blocking == ["db"]
    assert m.remove("core", force=True).ok
    assert chain_system.registry.entry("core") is None


def test_remove_enabled_module_is_a_state_error(chain_system):
    m = chain_system.manager
    m.install("core")
    m.enable("core")
    with pytest.raises(StateTransitionError):
        m.remove("core")


def test_install_with_dependencies_in_order(chain_system):
    chain_system.manager.install("app", with_dependencies=True)
    assert chain_system.publisher.names() == ["module.installed"] * 3
    assert [p["module"] for _, p in chain_system.publisher.events] == ["core", "db", "app"]


# ---- enable / disable ----
def test_enable_requires_enabled_dependencies(chain_system):
    m = chain_system.manager
    m.install("core")
    m.install("db")
    with pytest.raises(DependencyError) as ei:
        m.enable("db")
    assert ei.value.blocking == ["core"]
    assert "core" in ei.value.user_message
    m.enable("core")
    assert m.enable("db").state is ModuleState.ENABLED


def test_enable_is_idempotent(chain_system):
    m = chain_system.manager
    m.install("core")
    first = m.enable("core")
    second = m.enable("core")
    assert first.ok and first.changed
    assert second.ok and not second.changed
    assert second.state is ModuleState.ENABLED
    assert chain_system.publisher.names().count("module.enabled") == 1


def test_enable_not_installed_is_a_state_error(chain_system):
    with pytest.raises(StateTransitionError) as ei:
        chain_system.manager.enable("core")
    assert ei.value.state == "not_installed"


def test_enable_with_dependencies(chain_system):
    m = chain_system.manager
    m.install("app", with_dependencies=True)
    m.enable("app", with_dependencies=True)
    assert m.enabled_modules() == ("app", "core", "db")


def test_conflict_enforced_and_forceable():
    sys_ = build_system(make_manifest("x", conflicts=["y"]), make_manifest("y"))
    m = sys_.manager
    m.install("x")
    m.install("y")
    m.enable("y")
    with pytest.raises(ConflictError) as ei:
        m.enable("x")
    assert ei.value.blocking == ["y"]
    assert m.state("x") is ModuleState.INSTALLED

    res = m.enable("x", force=True)
    assert res.ok and res.warnings
    assert m.is_enabled("x") and m.is_enabled("y")


def test_conflict_declared_by_the_other_side():
    sys_ = build_system(make_manifest("x", conflicts=["y"]), make_manifest("y"))
    m = sys_.manager
    m.install("x")
    m.install("y")
    m.enable("x")
    with pytest.raises(ConflictError) as ei:
        m.enable("y")
    assert ei.value.blocking == ["x"]


def test_disable_blocked_by_enabled_dependent(chain_system):
    m = chain_system.manager
    m.install("app", with_dependencies=True)
    m.enable("app", with_dependencies=True)
    with pytest.raises(DependencyError) as ei:
        m.disable("db")
    assert ei.value.blocking == ["app"]
    assert m.disable("app").state is ModuleState.DISABLED
    assert m.disable("db").state is ModuleState.DISABLED


def test_disable_noop_and_state_error(chain_system):
    m = chain_system.manager
    m.install("core")
    with pytest.raises(StateTransitionError):
        m.disable("core")
    m.enable("core")
    m.disable("core")
    again = m.disable("core")
    assert again.ok and not again.changed


def test_optional_dependencies_enabled_best_effort():
    sys_ = build_system(
        make_manifest("a", optional=["b", "c", "ghost"]),
        make_manifest("b"),
        make_manifest("c", conflicts=["d"]),
        make_manifest("d"),
    )
    m = sys_.manager
    for name in ("a", "b", "c", "d"):
        m.install(name)
    m.enable("d")

    res = m.enable("a")
    assert res.ok and m.is_enabled("a")
    assert m.is_enabled("b")
    assert m.state("c") is ModuleState.INSTALLED
    assert any("'c'" in w for w in res.warnings)


# ---- update ----
def test_update_keeps_state_and_records_manifest(chain_system):
    m = chain_system.manager
    m.install("core")
    m.enable("core")
    res = m.update("core", make_manifest("core", version="2.0.0"))
    assert res.state is ModuleState.ENABLED
    assert chain_system.registry.entry("core").manifest.version == "2.0.0"
    name, payload = chain_system.publisher.events[-1]
    assert name == "module.updated"
    assert payload["previous_version"] == "1.0.0" and payload["version"] == "2.0.0"


def test_update_failure_reverts(chain_system):
    m = chain_system.manager
    m.install("core")
    m.install("extra")
    m.enable("extra")
    with pytest.raises(DependencyError):
        m.update("extra", make_manifest("extra", version="2.0.0", requires=["core"]))
    entry = chain_system.registry.entry("extra")
    assert entry.state is ModuleState.ENABLED
    assert entry.manifest.version == "1.0.0"
    assert chain_system.publisher.names()[-1] == "module.update_failed"

    res = m.update("extra", make_manifest("extra", version="2.0.0", requires=["core"]), force=True)
    assert res.ok and res.warnings
    assert chain_system.registry.entry("extra").manifest.required_dependencies == ("core",)


def test_update_introducing_cycle_fails(chain_system):
    m = chain_system.manager
    m.install("core")
    m.install("db")
    with pytest.raises(CircularDependencyError):
        m.update("core", make_manifest("core", requires=["db"]), force=True)
    assert m.state("core") is ModuleState.INSTALLED


def test_update_rejects_foreign_manifest_and_bad_state(chain_system):
    m = chain_system.manager
    m.install("core")
    with pytest.raises(ManifestError):
        m.update("core", make_manifest("db"))
    with pytest.raises(ManifestError):
        m.update("core", {"name": "core", "bogus": True})
    with pytest.raises(StateTransitionError):
        m.update("db", make_manifest("db", version="2.0.0"))
    assert m.update("core", {"name": "core", "version": "1.1.0"}).ok


def test_update_hook_failure_reverts():
    hooks = RecordingHooks(fail={("update", "a")})
    sys_ = build_system(make_manifest("a"), hooks=hooks.build())
    sys_.manager.install("a")
    with pytest.raises(LifecycleHookError):
        sys_.manager.update("a", make_manifest("a", version="2.0.0"))
    entry = sys_.registry.entry("a")
    assert entry.state is ModuleState.INSTALLED
    assert entry.manifest.version == "1.0.0"


def test_store_failure_during_update_never_leaves_updating():
    store = FailingStore()
    hooks = LifecycleHooks(on_update=lambda old, new: setattr(store, "fail", True))
    sys_ = build_system(make_manifest("a"), store=store, hooks=hooks)
    sys_.manager.install("a")
    sys_.manager.enable("a")

    with pytest.raises(OSError):
        sys_.manager.update("a", make_manifest("a", version="2.0.0"))
    entry = sys_.registry.entry("a")
    assert entry.state is ModuleState.ENABLED
    assert entry.manifest.version == "1.0.0"
    assert sys_.publisher.names()[-1] == "module.update_failed"

    persisted = store.load()["modules"]["a"]
    assert persisted["state"] == "updating"
    assert persisted["previous_state"] == "enabled"

    store.fail = False
    sys_.registry.load()
    entry = sys_.registry.entry("a")
    assert entry.state is ModuleState.ENABLED
    assert entry.previous_state is None
    assert sys_.manager.disable("a").state is ModuleState.DISABLED


# ---- hooks ----
def test_hooks_run_once_per_transition():
    hooks = RecordingHooks()
    sys_ = build_system(make_manifest("a"), hooks=hooks.build())
    m = sys_.manager
    m.install("a")
    m.enable("a")
    m.enable("a")
    m.disable("a")
    m.remove("a")
    assert hooks.calls == [("install", "a"), ("enable", "a"), ("disable", "a"), ("remove", "a")]


def test_failing_hook_moves_module_to_failed():
    hooks = RecordingHooks(fail={("enable", "a")})
    sys_ = build_system(make_manifest("a"), hooks=hooks.build())
    m = sys_.manager
    m.install("a")
    with pytest.raises(LifecycleHookError) as ei:
        m.enable("a")
    assert isinstance(ei.value.__cause__, RuntimeError)
    assert m.state("a") is ModuleState.FAILED
    assert sys_.publisher.names()[-1] == "module.failed"

    # failed modules can be removed and installed again
    m.remove("a")
    hooks.fail.clear()
    assert m.install("a").state is ModuleState.INSTALLED


# ---- concurrency guards ----
def test_lock_timeout_leaves_registry_unchanged():
    sys_ = build_system(make_manifest("a"), lock_timeout_seconds=0.1)
    sys_.manager.install("a")
    held = threading.Event()
    release = threading.Event()

    def holder() -> None:
        with sys_.registry.lock("a", timeout=1.0):
            held.set()
            release.wait(2.0)

    t = threading.Thread(target=holder)
    t.start()
    try:
        assert held.wait(1.0)
        with pytest.raises(LockTimeoutError):
            sys_.manager.enable("a")
    finally:
        release.set()
        t.join(2.0)
    assert sys_.manager.state("a") is ModuleState.INSTALLED
    assert sys_.publisher.names() == ["module.installed"]


def test_concurrent_change_that_breaks_guard_is_reported():
    sys_ = build_system(make_manifest("x", conflicts=["y"]), make_manifest("y"))
    m = sys_.manager
    m.install("x")
    m.install("y")
    y_manifest = sys_.registry.entry("y").manifest

    calls = []

    def sneak_in(manifest):  # noqa: ANN001
        calls.append(manifest.name)
        sys_.registry.put("y", y_manifest, ModuleState.ENABLED)

    m.hooks = LifecycleHooks(on_enable=sneak_in)
    with pytest.raises(ConcurrentModificationError) as ei:
        m.enable("x")
    assert ei.value.changed == ["y"]
    assert isinstance(ei.value.cause, ConflictError)
    assert m.state("x") is ModuleState.INSTALLED
    # the hook already ran once; its side effects are not rolled back
    assert calls == ["x"]


def test_concurrent_change_that_keeps_guard_passing_is_retried(chain_system):
    m = chain_system.manager
    m.install("core")
    m.install("db")
    m.enable("core")
    core_manifest = chain_system.registry.entry("core").manifest
    touched = []

    def bump_core(manifest):  # noqa: ANN001
        touched.append(manifest.name)
        chain_system.registry.put("core", core_manifest, ModuleState.ENABLED)

    m.hooks = LifecycleHooks(on_enable=bump_core)
    res = m.enable("db")
    assert res.ok and res.state is ModuleState.ENABLED
    assert touched == ["db"]


def test_commit_attempts_are_bounded():
    sys_ = build_system(make_manifest("a", requires=["b"]), make_manifest("b"), max_commit_attempts=1)
    m = sys_.manager
    m.install("b")
    m.enable("b")
    m.install("a")
    b_manifest = sys_.registry.entry("b").manifest
    m.hooks = LifecycleHooks(on_enable=lambda _m: sys_.registry.put("b", b_manifest, ModuleState.ENABLED))
    with pytest.raises(ConcurrentModificationError):
        m.enable("a")
    assert m.state("a") is ModuleState.INSTALLED


# ---- explicit results + queries ----
def test_execute_returns_error_values():
    sys_ = build_system(make_manifest("x", conflicts=["y"]), make_manifest("y"))
    m = sys_.manager
    assert m.execute("install", "x").ok
    assert m.execute("install", "y").ok
    assert m.execute("enable", "y").ok

    res = m.execute("enable", "x")
    assert not res.ok
    assert res.code == "conflict_error"
    assert res.error["context"]["blocking"] == ["y"]
    assert res.state is ModuleState.INSTALLED

    missing = m.execute("enable", "ghost")
    assert missing.code == "module_not_found" and missing.state is None
    assert m.execute("enable", "x", force=True).to_dict()["state"] == "enabled"
    with pytest.raises(ValueError):
        m.execute("explode", "x")


def test_queries(chain_system):
    m = chain_system.manager
    m.install("app", with_dependencies=True)
    m.enable("core")
    assert m.dependencies("app") == ("db",)
    assert m.dependents("core") == ["db"]
    assert m.is_installed("db") and not m.is_enabled("db")
    assert m.enabled_modules() == ("core",)
    assert m.install_order() == ["core", "db", "app", "extra"]
    assert not m.is_installed("ghost")
    with pytest.raises(UnknownModuleError):
        m.state("ghost")


def test_dependency_health(chain_system):
    m = chain_system.manager
    health = m.dependency_health("db")
    assert health.status == "critical" and health.missing == ["core"]
    m.install("core")
    assert m.dependency_health("db").status == "warning"
    m.enable("core")
    ok = m.dependency_health("db")
    assert ok.status == "healthy" and ok.available == ["core"]
    assert m.dependency_health("core").message == "No dependencies required"


def test_operations_are_audited(tmp_path):
    ops = OpsLogger(path=str(tmp_path / "logs" / "ops.jsonl"))
    sys_ = build_system(make_manifest("a"), make_manifest("b", requires=["a"]), ops=ops)
    sys_.manager.install("a")
    sys_.manager.install("b")
    with pytest.raises(DependencyError):
        sys_.manager.enable("b")
    records = ops.tail()
    assert [(r["event"], r["outcome"]) for r in records] == [
        ("module.install", "ok"),
        ("module.install", "ok"),
        ("module.enable", "rejected"),
    ]
    assert records[-1]["details"]["error"]["code"] == "dependency_error"
    with open(ops.path, "r", encoding="utf-8") as f:
        assert all(json.loads(line)["trace_id"] for line in f)
