from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class ModuleSystemError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(f"{self.code}: {self.user_message}")

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": dict(self.context or {}),
        }


def _names(items: Iterable[str]) -> str:
    return ", ".join(str(x) for x in items)


# ---- Graph errors (never downgraded by force) ----
class UnknownModuleError(ModuleSystemError):
    def __init__(self, module: str, **ctx: Any):
        super().__init__(
            "module_not_found",
            f"Module '{module}' is not known to the registry or discovery.",
            severity=Severity.WARN,
            recoverable=False,
            context={"module": module, **ctx},
        )
        self.module = module


class UnknownDependencyError(ModuleSystemError):
    def __init__(self, missing: Dict[str, Sequence[str]], **ctx: Any):
        edges = sorted((src, dst) for src, targets in missing.items() for dst in targets)
        detail = "; ".join(f"{src} -> {dst}" for src, dst in edges)
        super().__init__(
            "unknown_dependency",
            f"Dependency graph references unknown modules: {detail}",
            severity=Severity.ERROR,
            recoverable=False,
            context={"missing": {k: list(v) for k, v in missing.items()}, **ctx},
        )
        self.missing = {k: list(v) for k, v in missing.items()}


class CircularDependencyError(ModuleSystemError):
    def __init__(self, cycles: List[List[str]], module: str = "", **ctx: Any):
        rendered = "; ".join(" -> ".join(list(c) + [c[0]]) for c in cycles if c)
        prefix = f"Module '{module}' is part of a dependency cycle" if module else "Circular dependency detected"
        super().__init__(
            "circular_dependency",
            f"{prefix}: {rendered}",
            severity=Severity.ERROR,
            recoverable=False,
            context={"module": module, "cycles": [list(c) for c in cycles], **ctx},
        )
        self.module = module
        self.cycles = [list(c) for c in cycles]


# ---- Policy errors (advisory when force=True) ----
class DependencyError(ModuleSystemError):
    def __init__(self, module: str, blocking: Sequence[str], reason: str, **ctx: Any):
        super().__init__(
            "dependency_error",
            f"Module '{module}' {reason}: {_names(blocking)}",
            severity=Severity.WARN,
            recoverable=True,
            context={"module": module, "blocking": list(blocking), "reason": reason, **ctx},
        )
        self.module = module
        self.blocking = list(blocking)
        self.reason = reason


class ConflictError(ModuleSystemError):
    def __init__(self, module: str, blocking: Sequence[str], **ctx: Any):
        super().__init__(
            "conflict_error",
            f"Module '{module}' conflicts with enabled modules: {_names(blocking)}",
            severity=Severity.WARN,
            recoverable=True,
            context={"module": module, "blocking": list(blocking), **ctx},
        )
        self.module = module
        self.blocking = list(blocking)


# ---- Concurrency errors ----
class ConcurrentModificationError(ModuleSystemError):
    def __init__(self, module: str, changed: Sequence[str] = (), cause: ModuleSystemError | None = None, **ctx: Any):
        msg = f"Registry changed while operating on module '{module}'"
        if changed:
            msg += f" (changed: {_names(changed)})"
        if cause is not None:
            msg += f"; re-validation failed: {cause.user_message}"
        context: Dict[str, Any] = {"module": module, "changed": list(changed), **ctx}
        if cause is not None:
            context["cause"] = cause.to_dict()
        super().__init__("concurrent_modification", msg, severity=Severity.WARN, recoverable=True, context=context)
        self.module = module
        self.changed = list(changed)
        self.cause = cause


class LockTimeoutError(ModuleSystemError):
    def __init__(self, module: str, timeout_seconds: float, **ctx: Any):
        super().__init__(
            "lock_timeout",
            f"Timed out after {timeout_seconds:g}s waiting for the lock on module '{module}'.",
            severity=Severity.WARN,
            recoverable=True,
            context={"module": module, "timeout_seconds": float(timeout_seconds), **ctx},
        )
        self.module = module
        self.timeout_seconds = float(timeout_seconds)


# ---- Lifecycle errors ----
class StateTransitionError(ModuleSystemError):
    def __init__(self, module: str, operation: str, state: str, **ctx: Any):
        super().__init__(
            "state_transition_error",
            f"Cannot {operation} module '{module}' from state '{state}'.",
            severity=Severity.WARN,
            recoverable=False,
            context={"module": module, "operation": operation, "state": state, **ctx},
        )
        self.module = module
        self.operation = operation
        self.state = state


class ManifestError(ModuleSystemError):
    def __init__(self, user_message: str = "Invalid module manifest.", **ctx: Any):
        super().__init__("manifest_invalid", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class LifecycleHookError(ModuleSystemError):
    def __init__(self, module: str, operation: str, error: str, **ctx: Any):
        super().__init__(
            "lifecycle_hook_failed",
            f"The {operation} hook for module '{module}' failed: {error}",
            severity=Severity.ERROR,
            recoverable=True,
            context={"module": module, "operation": operation, "error": error, **ctx},
        )
        self.module = module
        self.operation = operation


class ConfigError(ModuleSystemError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


# Downgradable to warnings under force=True.
ADVISORY_ERRORS = (DependencyError, ConflictError)
