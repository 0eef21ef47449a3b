from __future__ import annotations

"""
Module lifecycle manager.

State machine: not_installed -> installed -> enabled <-> disabled, with
`failed` reachable when a transition hook raises and `updating` held only for
the duration of an update.

Every mutating operation follows the same flow:
- resolve the module (registry entry or discovery)
- take the per-module lock (bounded; LockTimeoutError means nothing changed)
- snapshot the registry and build a fresh, non-strict DependencyGraph
- evaluate guards; guards return error values instead of raising
- with force=True, DependencyError/ConflictError become logged warnings
- run the transition hook, then commit with the revisions of every module the
  guards consulted; a revision mismatch triggers re-snapshot + re-validation
- publish the event and write the ops record after the commit
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from modkeeper.core.config.models import GraphConfig, LifecycleConfig
from modkeeper.core.errors import (
    ADVISORY_ERRORS,
    CircularDependencyError,
    ConcurrentModificationError,
    ConflictError,
    DependencyError,
    LifecycleHookError,
    ManifestError,
    ModuleSystemError,
    StateTransitionError,
    UnknownModuleError,
)
from modkeeper.core.modules.graph import DependencyGraph
from modkeeper.core.modules.models import ManifestModel, ModuleState, RegistrySnapshot, parse_manifest
from modkeeper.core.modules.registry import ModuleRegistry
from modkeeper.core.ops_log import OpsLogger, new_trace_id


OPERATIONS = ("install", "enable", "disable", "remove", "update")

Hook = Callable[[ManifestModel], None]


@dataclass
class LifecycleHooks:
    """
    Caller-supplied callables run inside the locked section, before commit.
    A raising hook moves the module to `failed` (update reverts instead).

    A hook runs once per operation, before the first commit attempt; commit
    retries do not call it again. If a concurrent change then breaks the
    guards, ConcurrentModificationError is raised with the module's state
    unchanged, but whatever the hook already did is not undone. Hooks should
    be idempotent or cheap to repeat.
    """

    on_install: Optional[Hook] = None
    on_enable: Optional[Hook] = None
    on_disable: Optional[Hook] = None
    on_remove: Optional[Hook] = None
    on_update: Optional[Callable[[ManifestModel, ManifestModel], None]] = None


@dataclass(frozen=True)
class OperationResult:
    operation: str
    module: str
    ok: bool
    state: Optional[ModuleState] = None
    changed: bool = False
    warnings: Tuple[str, ...] = ()
    error: Optional[Dict[str, Any]] = None

    @property
    def code(self) -> Optional[str]:
        return (self.error or {}).get("code")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "module": self.module,
            "ok": self.ok,
            "state": self.state.value if self.state is not None else None,
            "changed": self.changed,
            "warnings": list(self.warnings),
            "error": dict(self.error) if self.error else None,
        }


class DependencyHealth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str
    status: str  # healthy|warning|critical
    message: str
    available: List[str] = Field(default_factory=list)
    disabled: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)


@dataclass
class _Verdict:
    errors: List[ModuleSystemError] = field(default_factory=list)
    consulted: Set[str] = field(default_factory=set)
    noop: bool = False


class LifecycleManager:
    def __init__(
        self,
        registry: ModuleRegistry,
        *,
        publisher: Any = None,
        hooks: Optional[LifecycleHooks] = None,
        graph_config: Optional[GraphConfig] = None,
        lifecycle_config: Optional[LifecycleConfig] = None,
        ops: Optional[OpsLogger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.publisher = publisher
        self.hooks = hooks or LifecycleHooks()
        self.graph_config = graph_config or GraphConfig()
        self.lifecycle_config = lifecycle_config or LifecycleConfig()
        self.ops = ops
        self.logger = logger or logging.getLogger(__name__)

    # ---- operations ----
    def install(self, name: str, *, force: bool = False, with_dependencies: bool = False) -> OperationResult:
        if with_dependencies:
            self._prepare_dependencies(name, force=force, enable=False)
        return self._transition(
            "install", name, force=force, guard=self._guard_install, target=ModuleState.INSTALLED, hook=self.hooks.on_install
        )

    def enable(self, name: str, *, force: bool = False, with_dependencies: bool = False) -> OperationResult:
        if with_dependencies:
            self._prepare_dependencies(name, force=force, enable=True)
        result = self._transition(
            "enable", name, force=force, guard=self._guard_enable, target=ModuleState.ENABLED, hook=self.hooks.on_enable
        )
        if result.changed:
            notes = self._enable_optional(name)
            if notes:
                result = replace(result, warnings=result.warnings + tuple(notes))
        return result

    def disable(self, name: str, *, force: bool = False) -> OperationResult:
        return self._transition(
            "disable", name, force=force, guard=self._guard_disable, target=ModuleState.DISABLED, hook=self.hooks.on_disable
        )

    def remove(self, name: str, *, force: bool = False) -> OperationResult:
        return self._transition("remove", name, force=force, guard=self._guard_remove, target=None, hook=self.hooks.on_remove)

    def update(self, name: str, new_manifest: Any, *, force: bool = False) -> OperationResult:
        if not isinstance(new_manifest, ManifestModel):
            parsed, err = parse_manifest(new_manifest)
            if parsed is None:
                raise ManifestError(f"Invalid manifest for module '{name}': {err}", module=name)
            new_manifest = parsed
        if new_manifest.name != name:
            raise ManifestError(
                f"Manifest name '{new_manifest.name}' does not match module '{name}'.", module=name, manifest_name=new_manifest.name
            )
        self._resolve(name)
        trace_id = new_trace_id()

        with self.registry.lock(name):
            entry = self.registry.entry(name)
            prior = entry.state if entry is not None else ModuleState.NOT_INSTALLED
            if entry is None or not prior.can_update():
                err = StateTransitionError(name, "update", prior.value)
                self._audit(trace_id, "update", name, "rejected", error=err)
                raise err
            old = entry.manifest
            self.registry.put(name, old, ModuleState.UPDATING, expect={name: entry.revision}, previous_state=prior)
            try:
                warnings = self._apply_update(name, old, new_manifest, prior, force=force)
            except Exception as e:
                self.registry.restore(name, old, prior)
                self.logger.warning("update of %s to %s failed; reverted to %s: %s", name, new_manifest.version, prior.value, e)
                self._publish(
                    "module.update_failed",
                    {
                        "module": name,
                        "state": prior.value,
                        "version": old.version,
                        "target_version": new_manifest.version,
                        "error": str(e)[:300],
                    },
                )
                self._audit(trace_id, "update", name, "failed", error=e)
                raise

        payload = {
            "module": name,
            "state": prior.value,
            "version": new_manifest.version,
            "previous_version": old.version,
            "forced": bool(force and warnings),
            "warnings": list(warnings),
        }
        self._publish("module.updated", payload)
        self._audit(trace_id, "update", name, "ok", details=payload)
        self.logger.info("updated %s %s -> %s", name, old.version, new_manifest.version)
        return OperationResult(operation="update", module=name, ok=True, state=prior, changed=True, warnings=tuple(warnings))

    def execute(self, operation: str, name: str, **opts: Any) -> OperationResult:
        """
        Run one operation and report the outcome instead of raising.
        Module-system errors are returned as `error` (code, message, context).
        """
        fn = {
            "install": self.install,
            "enable": self.enable,
            "disable": self.disable,
            "remove": self.remove,
            "update": self.update,
        }.get(operation)
        if fn is None:
            raise ValueError(f"unknown operation: {operation}")
        try:
            return fn(name, **opts)
        except ModuleSystemError as e:
            _, state, found = self.registry.get(name)
            return OperationResult(
                operation=operation,
                module=name,
                ok=False,
                state=state if found else None,
                error=e.to_dict(),
            )

    # ---- queries ----
    def state(self, name: str) -> ModuleState:
        _, state, found = self.registry.get(name)
        if not found:
            raise UnknownModuleError(name)
        return state

    def is_installed(self, name: str) -> bool:
        _, state, found = self.registry.get(name)
        return found and state.is_installed()

    def is_enabled(self, name: str) -> bool:
        _, state, found = self.registry.get(name)
        return found and state.is_active()

    def dependencies(self, name: str) -> Tuple[str, ...]:
        return self._resolve(name).required_dependencies

    def dependents(self, name: str) -> List[str]:
        self._resolve(name)
        return self.graph().required_by(name)

    def enabled_modules(self) -> Tuple[str, ...]:
        return self.registry.enabled_names()

    def graph(self, *, strict: bool = False) -> DependencyGraph:
        return self._graph(self.registry.snapshot(), strict=strict)

    def install_order(self) -> List[str]:
        return self.graph().topological_order()

    def dependency_health(self, name: str) -> DependencyHealth:
        man = self._resolve(name)
        snap = self.registry.snapshot()
        available: List[str] = []
        disabled: List[str] = []
        missing: List[str] = []
        for dep in man.required_dependencies:
            st = snap.state(dep)
            if not st.is_installed():
                missing.append(dep)
            elif not st.is_active():
                disabled.append(dep)
            else:
                available.append(dep)
        if missing:
            status, message = "critical", "Missing dependencies: " + ", ".join(missing)
        elif disabled:
            status, message = "warning", "Disabled dependencies: " + ", ".join(disabled)
        elif man.required_dependencies:
            status, message = "healthy", "All dependencies are available and enabled"
        else:
            status, message = "healthy", "No dependencies required"
        return DependencyHealth(
            module=name, status=status, message=message, available=available, disabled=disabled, missing=missing
        )

    # ---- guards (return errors, never raise) ----
    def _guard_install(self, name: str, snap: RegistrySnapshot, graph: DependencyGraph) -> _Verdict:
        v = _Verdict(consulted={name})
        state = snap.state(name)
        if not state.can_install():
            v.errors.append(StateTransitionError(name, "install", state.value))
            return v
        cycles = graph.cycles_through(name)
        if cycles:
            v.errors.append(CircularDependencyError(cycles, module=name))
            return v
        man = graph.manifest(name)
        v.consulted.update(man.required_dependencies)
        missing = graph.missing_dependencies(name).get(name, ())
        if missing:
            v.errors.append(DependencyError(name, missing, "has unresolvable required dependencies"))
        return v

    def _guard_enable(self, name: str, snap: RegistrySnapshot, graph: DependencyGraph) -> _Verdict:
        v = _Verdict(consulted={name})
        state = snap.state(name)
        if state is ModuleState.ENABLED:
            v.noop = True
            return v
        if not state.can_enable():
            v.errors.append(StateTransitionError(name, "enable", state.value))
            return v
        cycles = graph.cycles_through(name)
        if cycles:
            v.errors.append(CircularDependencyError(cycles, module=name))
            return v
        man = graph.manifest(name)
        v.consulted.update(man.required_dependencies)
        blocking = [d for d in man.required_dependencies if snap.state(d) is not ModuleState.ENABLED]
        if blocking:
            v.errors.append(DependencyError(name, blocking, "requires modules that are not enabled"))
        rivals = set(man.conflicts) | {n for n, m in snap.manifests.items() if m.conflicts_with(name)}
        v.consulted.update(rivals)
        active = sorted(r for r in rivals if snap.state(r) is ModuleState.ENABLED)
        if active:
            v.errors.append(ConflictError(name, active))
        return v

    def _guard_disable(self, name: str, snap: RegistrySnapshot, graph: DependencyGraph) -> _Verdict:
        v = _Verdict(consulted={name})
        state = snap.state(name)
        if state is ModuleState.DISABLED:
            v.noop = True
            return v
        if not state.can_disable():
            v.errors.append(StateTransitionError(name, "disable", state.value))
            return v
        dependents = graph.required_by(name)
        v.consulted.update(dependents)
        blocking = [d for d in dependents if snap.state(d) is ModuleState.ENABLED]
        if blocking:
            v.errors.append(DependencyError(name, blocking, "is required by enabled modules"))
        return v

    def _guard_remove(self, name: str, snap: RegistrySnapshot, graph: DependencyGraph) -> _Verdict:
        v = _Verdict(consulted={name})
        state = snap.state(name)
        if not state.can_remove():
            v.errors.append(StateTransitionError(name, "remove", state.value))
            return v
        dependents = graph.required_by(name)
        v.consulted.update(dependents)
        blocking = [d for d in dependents if snap.state(d).is_installed()]
        if blocking:
            v.errors.append(DependencyError(name, blocking, "is required by installed modules"))
        return v

    def _guard_update(
        self, name: str, new: ManifestModel, prior: ModuleState, snap: RegistrySnapshot, graph: DependencyGraph
    ) -> _Verdict:
        v = _Verdict(consulted={name})
        cycles = graph.cycles_through(name)
        if cycles:
            v.errors.append(CircularDependencyError(cycles, module=name))
            return v
        v.consulted.update(new.required_dependencies)
        v.consulted.update(new.conflicts)
        if prior is not ModuleState.ENABLED:
            return v
        blocking = [d for d in new.required_dependencies if snap.state(d) is not ModuleState.ENABLED]
        if blocking:
            v.errors.append(DependencyError(name, blocking, "would require modules that are not enabled"))
        active = [c for c in new.conflicts if snap.state(c) is ModuleState.ENABLED]
        if active:
            v.errors.append(ConflictError(name, active))
        return v

    # ---- internals ----
    def _resolve(self, name: str) -> ManifestModel:
        man, _, found = self.registry.get(name)
        if not found or man is None:
            raise UnknownModuleError(name)
        return man

    def _graph(self, snap: RegistrySnapshot, *, strict: bool = False) -> DependencyGraph:
        return DependencyGraph.build(
            snap.manifests.values(),
            states=snap.states,
            strict=strict,
            weights=self.graph_config.criticality,
            hub_threshold=self.graph_config.hub_threshold,
        )

    def _triage(
        self, operation: str, name: str, errors: List[ModuleSystemError], force: bool
    ) -> Tuple[Optional[ModuleSystemError], List[str]]:
        warnings: List[str] = []
        for err in errors:
            if force and isinstance(err, ADVISORY_ERRORS):
                self.logger.warning("%s %s forced: %s", operation, name, err.user_message)
                warnings.append(err.user_message)
                continue
            return err, warnings
        return None, warnings

    def _guarded_commit(
        self,
        operation: str,
        name: str,
        *,
        force: bool,
        plan: Callable[[], Tuple[RegistrySnapshot, _Verdict]],
        commit: Callable[[RegistrySnapshot, Dict[str, int]], None],
        before_commit: Optional[Callable[[RegistrySnapshot], None]] = None,
    ) -> Tuple[RegistrySnapshot, _Verdict, List[str]]:
        """
        Validate and commit against the consulted revisions. On a mismatch,
        re-snapshot and re-validate, up to lifecycle.max_commit_attempts.
        """
        planned: Dict[str, int] = {}
        prepared = False
        attempt = 0
        while True:
            attempt += 1
            snap, verdict = plan()
            if verdict.noop:
                return snap, verdict, []
            fatal, warnings = self._triage(operation, name, verdict.errors, force)
            if fatal is not None:
                if attempt > 1:
                    changed = sorted(n for n, rev in planned.items() if snap.revision(n) != rev)
                    raise ConcurrentModificationError(name, changed=changed, cause=fatal)
                raise fatal
            expect = snap.revisions_for(verdict.consulted | {name})
            if not planned:
                planned = dict(expect)
            if before_commit is not None and not prepared:
                prepared = True
                before_commit(snap)
            try:
                commit(snap, expect)
                return snap, verdict, warnings
            except ConcurrentModificationError as e:
                if attempt >= self.lifecycle_config.max_commit_attempts:
                    raise
                self.logger.warning(
                    "%s %s: registry changed (%s); re-validating (attempt %d)", operation, name, ", ".join(e.changed), attempt
                )

    def _transition(
        self,
        operation: str,
        name: str,
        *,
        force: bool,
        guard: Callable[[str, RegistrySnapshot, DependencyGraph], _Verdict],
        target: Optional[ModuleState],
        hook: Optional[Hook],
    ) -> OperationResult:
        self._resolve(name)
        trace_id = new_trace_id()

        def plan() -> Tuple[RegistrySnapshot, _Verdict]:
            snap = self.registry.snapshot()
            return snap, guard(name, snap, self._graph(snap))

        def run_hook(snap: RegistrySnapshot) -> None:
            if hook is not None:
                self._run_hook(operation, name, snap.manifests[name], hook, trace_id)

        def commit(snap: RegistrySnapshot, expect: Dict[str, int]) -> None:
            if target is None:
                self.registry.delete(name, expect=expect)
            else:
                self.registry.put(name, snap.manifests[name], target, expect=expect)

        try:
            with self.registry.lock(name):
                snap, verdict, warnings = self._guarded_commit(
                    operation, name, force=force, plan=plan, commit=commit, before_commit=run_hook
                )
        except LifecycleHookError:
            raise
        except ModuleSystemError as e:
            self._audit(trace_id, operation, name, "rejected", error=e)
            raise

        if verdict.noop:
            state = snap.state(name)
            self.logger.info("%s %s: already %s", operation, name, state.value)
            return OperationResult(operation=operation, module=name, ok=True, state=state, changed=False)

        state = target or ModuleState.NOT_INSTALLED
        payload = {
            "module": name,
            "state": state.value,
            "version": snap.manifests[name].version,
            "forced": bool(force and warnings),
            "warnings": list(warnings),
        }
        event = "module.removed" if target is None else f"module.{state.value}"
        self._publish(event, payload)
        self._audit(trace_id, operation, name, "ok", details=payload)
        self.logger.info("%s %s -> %s%s", operation, name, state.value, " (forced)" if payload["forced"] else "")
        return OperationResult(operation=operation, module=name, ok=True, state=state, changed=True, warnings=tuple(warnings))

    def _run_hook(self, operation: str, name: str, manifest: ManifestModel, hook: Hook, trace_id: str) -> None:
        try:
            hook(manifest)
        except Exception as e:
            self.registry.put(name, manifest, ModuleState.FAILED)
            err = LifecycleHookError(name, operation, str(e)[:200])
            self.logger.error("%s hook for %s failed: %s", operation, name, e)
            self._publish(
                "module.failed",
                {"module": name, "state": ModuleState.FAILED.value, "version": manifest.version, "operation": operation, "error": str(e)[:200]},
            )
            self._audit(trace_id, operation, name, "failed", error=err)
            raise err from e

    def _apply_update(
        self, name: str, old: ManifestModel, new: ManifestModel, prior: ModuleState, *, force: bool
    ) -> List[str]:
        def plan() -> Tuple[RegistrySnapshot, _Verdict]:
            snap = self.registry.snapshot().with_manifest(new)
            return snap, self._guard_update(name, new, prior, snap, self._graph(snap))

        def run_hook(snap: RegistrySnapshot) -> None:
            if self.hooks.on_update is None:
                return
            try:
                self.hooks.on_update(old, new)
            except Exception as e:
                raise LifecycleHookError(name, "update", str(e)[:200]) from e

        def commit(snap: RegistrySnapshot, expect: Dict[str, int]) -> None:
            self.registry.put(name, new, prior, expect=expect)

        _, _, warnings = self._guarded_commit("update", name, force=force, plan=plan, commit=commit, before_commit=run_hook)
        return warnings

    def _prepare_dependencies(self, name: str, *, force: bool, enable: bool) -> None:
        """Install (and optionally enable) required dependencies first, in dependency order."""
        self._resolve(name)
        for dep in self.graph().dependency_order(name)[:-1]:
            _, state, _ = self.registry.get(dep)
            if state.can_install():
                self.install(dep, force=force)
            if enable:
                self.enable(dep, force=force)

    def _enable_optional(self, name: str) -> List[str]:
        """
        Best-effort, single attempt, after the target's lock is released.
        Failures are logged and reported as warnings, never raised.
        """
        snap = self.registry.snapshot()
        graph = self._graph(snap)
        notes: List[str] = []
        for dep in graph.unresolved_optional(name):
            self.logger.info("optional dependency %s of %s is not available", dep, name)
        for dep in graph.optional(name):
            if snap.state(dep) not in (ModuleState.INSTALLED, ModuleState.DISABLED):
                continue
            try:
                self.enable(dep)
            except ModuleSystemError as e:
                self.logger.warning("optional dependency %s of %s not enabled: %s", dep, name, e.user_message)
                notes.append(f"optional dependency '{dep}' not enabled: {e.user_message}")
        return notes

    def _publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(event_name, payload)
        except Exception as e:  # the transition is already committed
            self.logger.warning("publishing %s failed: %s", event_name, e)

    def _audit(
        self,
        trace_id: str,
        operation: str,
        name: str,
        outcome: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self.ops is None:
            return
        body: Dict[str, Any] = {"module": name, **(details or {})}
        if isinstance(error, ModuleSystemError):
            body["error"] = {"code": error.code, "message": error.user_message}
        elif error is not None:
            body["error"] = {"code": type(error).__name__, "message": str(error)[:200]}
        try:
            self.ops.log(trace_id=trace_id, event=f"module.{operation}", outcome=outcome, details=body)
        except OSError as e:
            self.logger.warning("ops log write failed: %s", e)
