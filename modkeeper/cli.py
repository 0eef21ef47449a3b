from __future__ import annotations

"""
Command-line entry point: `python -m modkeeper [--config PATH] <command>`.

Commands map 1:1 onto LifecycleManager / DependencyGraph calls. Output is
plain "a | b | c" table lines so it stays greppable and testable.
Exit codes: 0 ok, 1 module-system error, 2 usage error (argparse).
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from modkeeper.core.config import ModkeeperConfig, load_config
from modkeeper.core.errors import ModuleSystemError, UnknownModuleError
from modkeeper.core.events import BusPublisher, EventBus
from modkeeper.core.logger import setup_logging
from modkeeper.core.modules.discovery import ModuleDiscovery
from modkeeper.core.modules.graph import DependencyGraph
from modkeeper.core.modules.lifecycle import LifecycleManager, OperationResult
from modkeeper.core.modules.registry import ModuleRegistry
from modkeeper.core.modules.store import JsonFileStore
from modkeeper.core.ops_log import OpsLogger


@dataclass
class Runtime:
    cfg: ModkeeperConfig
    registry: ModuleRegistry
    manager: LifecycleManager
    bus: EventBus

    def close(self) -> None:
        self.bus.shutdown()


def build_runtime(cfg: ModkeeperConfig, *, logger: Optional[logging.Logger] = None) -> Runtime:
    logger = logger or logging.getLogger("modkeeper")
    store = JsonFileStore(cfg.registry.path, backup_keep=cfg.registry.backup_keep, logger=logger)
    registry = ModuleRegistry(
        store,
        ModuleDiscovery(modules_root=cfg.modules_root, logger=logger),
        lock_timeout_seconds=cfg.registry.lock_timeout_seconds,
        cache_ttl_seconds=cfg.registry.cache_ttl_seconds,
        logger=logger,
    )
    bus = EventBus(cfg=cfg.events, logger=logger)
    manager = LifecycleManager(
        registry,
        publisher=BusPublisher(bus),
        graph_config=cfg.graph,
        lifecycle_config=cfg.lifecycle,
        ops=OpsLogger(path=cfg.lifecycle.ops_log_path),
        logger=logger,
    )
    return Runtime(cfg=cfg, registry=registry, manager=manager, bus=bus)


# ---- rendering ----
def list_lines(rt: Runtime) -> List[str]:
    """Columns: module | version | state | requires | conflicts"""
    snap = rt.registry.snapshot()
    lines = ["module | version | state | requires | conflicts"]
    for name in sorted(snap.manifests):
        man = snap.manifests[name]
        lines.append(
            f"{name} | {man.version} | {snap.state(name).value} | "
            f"{','.join(man.required_dependencies) or '-'} | {','.join(man.conflicts) or '-'}"
        )
    return lines


def result_lines(result: OperationResult) -> List[str]:
    verb = "changed" if result.changed else "unchanged"
    state = result.state.value if result.state is not None else "-"
    lines = [f"{result.operation} {result.module}: {state} ({verb})"]
    lines.extend(f"warning: {w}" for w in result.warnings)
    return lines


def order_lines(graph: DependencyGraph) -> List[str]:
    return [f"{i} | {name}" for i, name in enumerate(graph.topological_order(), start=1)]


def cycles_lines(graph: DependencyGraph) -> List[str]:
    cycles = graph.find_cycles()
    if not cycles:
        return ["no cycles"]
    return [" -> ".join(c + [c[0]]) for c in cycles]


def impact_lines(graph: DependencyGraph, name: str) -> List[str]:
    rep = graph.analyze_impact(name)
    lines = [
        f"module | {rep.module}",
        f"impact_radius | {rep.impact_radius}",
        f"criticality_score | {rep.criticality_score:g}",
        "direct dependencies:",
    ]
    for d in rep.direct_dependencies:
        lines.append(f"  {d.name} | {d.kind} | exists={str(d.exists).lower()} | satisfied={str(d.satisfied).lower()}")
    lines.append("transitive dependencies:")
    lines.extend(f"  {t.name} | depth={t.depth}" for t in rep.transitive_dependencies)
    lines.append("dependents:")
    lines.extend(f"  {d.name} | {d.kind}" for d in rep.dependents)
    return lines


def hubs_lines(graph: DependencyGraph, threshold: Optional[int] = None) -> List[str]:
    lines = ["module | dependents | score"]
    for h in graph.identify_hubs(threshold):
        lines.append(f"{h.name} | {h.dependent_count} | {h.criticality_score:g}")
    return lines


def clusters_lines(graph: DependencyGraph) -> List[str]:
    lines = ["cluster | size | density | modules"]
    for c in graph.clusters():
        lines.append(f"{c.id} | {c.size} | {c.interconnection_density:.3f} | {','.join(c.modules)}")
    return lines


def metrics_lines(graph: DependencyGraph) -> List[str]:
    return [f"{k} | {v}" for k, v in graph.metrics().model_dump().items()]


# ---- commands ----
def _operation(op: str) -> Callable[[Runtime, argparse.Namespace], List[str]]:
    def run(rt: Runtime, args: argparse.Namespace) -> List[str]:
        opts: Dict[str, Any] = {"force": bool(args.force)}
        if getattr(args, "with_deps", False):
            opts["with_dependencies"] = True
        return result_lines(getattr(rt.manager, op)(args.name, **opts))

    return run


def _update(rt: Runtime, args: argparse.Namespace) -> List[str]:
    if args.manifest:
        with open(args.manifest, "r", encoding="utf-8") as f:
            raw = json.load(f)
    else:
        rt.registry.invalidate(args.name)
        found = {m.name: m for m in rt.registry.discovery.list_manifests()}
        if args.name not in found:
            raise UnknownModuleError(args.name, source="discovery")
        raw = found[args.name]
    return result_lines(rt.manager.update(args.name, raw, force=bool(args.force)))


def _health(rt: Runtime, args: argparse.Namespace) -> List[str]:
    h = rt.manager.dependency_health(args.name)
    return [
        f"{h.module} | {h.status} | {h.message}",
        f"available | {','.join(h.available) or '-'}",
        f"disabled | {','.join(h.disabled) or '-'}",
        f"missing | {','.join(h.missing) or '-'}",
    ]


COMMANDS: Dict[str, Callable[[Runtime, argparse.Namespace], List[str]]] = {
    "list": lambda rt, args: list_lines(rt),
    "install": _operation("install"),
    "enable": _operation("enable"),
    "disable": _operation("disable"),
    "remove": _operation("remove"),
    "update": _update,
    "health": _health,
    "order": lambda rt, args: order_lines(rt.manager.graph()),
    "cycles": lambda rt, args: cycles_lines(rt.manager.graph()),
    "impact": lambda rt, args: impact_lines(rt.manager.graph(), args.name),
    "hubs": lambda rt, args: hubs_lines(rt.manager.graph(), args.threshold),
    "clusters": lambda rt, args: clusters_lines(rt.manager.graph()),
    "metrics": lambda rt, args: metrics_lines(rt.manager.graph()),
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="modkeeper", description="Module dependency and lifecycle manager")
    ap.add_argument("--config", default=None, help="Path to config JSON (default: $MODKEEPER_CONFIG or config/modkeeper.json).")
    ap.add_argument("--modules-root", default=None, help="Override modules_root from config.")
    ap.add_argument("--registry", default=None, help="Override registry.path from config.")
    ap.add_argument("--verbose", action="store_true", help="Echo log records to stderr.")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List known modules and their states.")
    for op, with_deps in (("install", True), ("enable", True), ("disable", False), ("remove", False)):
        p = sub.add_parser(op, help=f"{op.capitalize()} a module.")
        p.add_argument("name")
        p.add_argument("--force", action="store_true", help="Downgrade dependency/conflict errors to warnings.")
        if with_deps:
            p.add_argument("--with-deps", action="store_true", help="Handle required dependencies first.")
    p = sub.add_parser("update", help="Record a new manifest for an installed module.")
    p.add_argument("name")
    p.add_argument("--manifest", default=None, help="Manifest JSON file (default: rescan modules_root).")
    p.add_argument("--force", action="store_true")
    p = sub.add_parser("health", help="Dependency health of one module.")
    p.add_argument("name")
    sub.add_parser("order", help="Install order (dependencies first).")
    sub.add_parser("cycles", help="Report dependency cycles.")
    p = sub.add_parser("impact", help="Impact analysis for one module.")
    p.add_argument("name")
    p = sub.add_parser("hubs", help="Modules with many direct dependents.")
    p.add_argument("--threshold", type=int, default=None)
    sub.add_parser("clusters", help="Weakly connected module clusters.")
    sub.add_parser("metrics", help="Whole-graph metrics.")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
        if args.modules_root:
            cfg.modules_root = args.modules_root
        if args.registry:
            cfg.registry.path = args.registry
        logger = setup_logging(cfg.log_dir, console=bool(args.verbose))
        rt = build_runtime(cfg, logger=logger)
    except ModuleSystemError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        lines = COMMANDS[args.command](rt, args)
    except ModuleSystemError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        rt.close()
    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
