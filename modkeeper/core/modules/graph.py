from __future__ import annotations

"""
Dependency graph over module manifests.

Edges are keyed by module name (string ids, never object references) so a
graph is cheap to rebuild from a registry snapshot for every planning call.
Edge A -> B means "A requires B". Required edges drive ordering; optional
edges are advisory and only feed impact analysis, clustering and metrics.
All traversals visit nodes in sorted order so reports are reproducible.
"""

import heapq
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from modkeeper.core.config.models import CriticalityWeights
from modkeeper.core.errors import CircularDependencyError, ManifestError, UnknownDependencyError, UnknownModuleError
from modkeeper.core.modules.models import ManifestModel, ModuleState


REQUIRED = "required"
OPTIONAL = "optional"

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DirectDependency(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    kind: str = REQUIRED
    exists: bool = False
    version: Optional[str] = None
    satisfied: bool = False


class TransitiveDependency(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    depth: int = Field(ge=1)
    version: Optional[str] = None


class Dependent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    kind: str = REQUIRED
    version: Optional[str] = None


class ImpactReport(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str
    direct_dependencies: List[DirectDependency] = Field(default_factory=list)
    transitive_dependencies: List[TransitiveDependency] = Field(default_factory=list)
    dependents: List[Dependent] = Field(default_factory=list)
    impact_radius: int = 0
    criticality_score: float = 0.0


class HubModule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    dependent_count: int
    criticality_score: float


class Cluster(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    modules: List[str]
    size: int
    interconnection_density: float = 0.0


class GraphMetrics(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    nodes: int = 0
    edges: int = 0
    density: float = 0.0
    average_degree: float = 0.0
    max_depth: int = 0
    circular_dependencies: int = 0
    isolated_modules: int = 0
    hub_modules: List[str] = Field(default_factory=list)


class DependencyGraph:
    """
    Immutable directed graph built from a collection of manifests.

    Use `DependencyGraph.build(...)`; the constructor expects pre-validated maps.
    """

    def __init__(
        self,
        *,
        manifests: Dict[str, ManifestModel],
        states: Dict[str, ModuleState],
        missing: Dict[str, Tuple[str, ...]],
        weights: CriticalityWeights,
        hub_threshold: int,
    ):
        self._manifests = manifests
        self._states = states
        self._missing = missing
        self.weights = weights
        self.hub_threshold = int(hub_threshold)

        self._requires: Dict[str, Tuple[str, ...]] = {}
        self._optional: Dict[str, Tuple[str, ...]] = {}
        self._required_by: Dict[str, List[str]] = {n: [] for n in manifests}
        self._optional_by: Dict[str, List[str]] = {n: [] for n in manifests}
        for name in sorted(manifests):
            man = manifests[name]
            req = tuple(d for d in man.required_dependencies if d in manifests)
            opt = tuple(d for d in man.optional_dependencies if d in manifests)
            self._requires[name] = req
            self._optional[name] = opt
            for d in req:
                self._required_by[d].append(name)
            for d in opt:
                self._optional_by[d].append(name)

    @classmethod
    def build(
        cls,
        manifests: Iterable[ManifestModel],
        *,
        states: Optional[Mapping[str, ModuleState]] = None,
        strict: bool = True,
        weights: Optional[CriticalityWeights] = None,
        hub_threshold: int = 5,
    ) -> "DependencyGraph":
        by_name: Dict[str, ManifestModel] = {}
        for man in manifests:
            if man.name in by_name:
                raise ManifestError(f"Duplicate manifest for module '{man.name}'.", module=man.name)
            by_name[man.name] = man

        missing: Dict[str, Tuple[str, ...]] = {}
        for name in sorted(by_name):
            absent = tuple(d for d in by_name[name].required_dependencies if d not in by_name)
            if absent:
                missing[name] = absent
        if strict and missing:
            raise UnknownDependencyError(missing)

        return cls(
            manifests=by_name,
            states=dict(states or {}),
            missing=missing,
            weights=weights or CriticalityWeights(),
            hub_threshold=hub_threshold,
        )

    # ---- edge queries ----
    def __contains__(self, name: object) -> bool:
        return name in self._manifests

    def __len__(self) -> int:
        return len(self._manifests)

    def nodes(self) -> List[str]:
        return sorted(self._manifests)

    def manifest(self, name: str) -> ManifestModel:
        self._require_node(name)
        return self._manifests[name]

    def state(self, name: str) -> ModuleState:
        return self._states.get(name, ModuleState.NOT_INSTALLED)

    def requires(self, name: str) -> Tuple[str, ...]:
        self._require_node(name)
        return self._requires[name]

    def optional(self, name: str) -> Tuple[str, ...]:
        self._require_node(name)
        return self._optional[name]

    def required_by(self, name: str) -> List[str]:
        self._require_node(name)
        return sorted(self._required_by[name])

    def optionally_required_by(self, name: str) -> List[str]:
        self._require_node(name)
        return sorted(self._optional_by[name])

    def dependents(self, name: str) -> List[str]:
        self._require_node(name)
        return sorted(set(self._required_by[name]) | set(self._optional_by[name]))

    def missing_dependencies(self, name: Optional[str] = None) -> Dict[str, Tuple[str, ...]]:
        """Required edges whose target is absent (only populated when built with strict=False)."""
        if name is None:
            return dict(self._missing)
        return {name: self._missing[name]} if name in self._missing else {}

    def unresolved_optional(self, name: str) -> Tuple[str, ...]:
        man = self.manifest(name)
        return tuple(d for d in man.optional_dependencies if d not in self._manifests)

    # ---- cycles + ordering ----
    def find_cycles(self) -> List[List[str]]:
        """
        Three-colour DFS. Each back edge yields one cycle, listed from its entry
        point to the node that closes it (the entry point is not repeated).
        """
        color: Dict[str, int] = {n: _WHITE for n in self._manifests}
        cycles: List[List[str]] = []

        for root in self.nodes():
            if color[root] != _WHITE:
                continue
            path: List[str] = [root]
            color[root] = _GRAY
            stack: List[Tuple[str, Iterable[str]]] = [(root, iter(sorted(self._requires[root])))]
            while stack:
                node, it = stack[-1]
                advanced = False
                for dep in it:
                    if color[dep] == _GRAY:
                        cycles.append(path[path.index(dep):])
                    elif color[dep] == _WHITE:
                        color[dep] = _GRAY
                        path.append(dep)
                        stack.append((dep, iter(sorted(self._requires[dep]))))
                        advanced = True
                        break
                if not advanced:
                    color[node] = _BLACK
                    path.pop()
                    stack.pop()
        return cycles

    def cycles_through(self, name: str) -> List[List[str]]:
        """
        Cycles containing `name`. find_cycles() reports one cycle per back edge,
        so a node that closes a loop through a cross edge may be absent from
        every reported cycle; the shortest loop back to `name` covers that case.
        """
        self._require_node(name)
        found = [c for c in self.find_cycles() if name in c]
        if found:
            return found
        loop = self._shortest_loop(name)
        return [loop] if loop else []

    def _shortest_loop(self, name: str) -> List[str]:
        # BFS over required edges until an edge leads back to `name`.
        parent: Dict[str, str] = {}
        seen: Set[str] = {name}
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for dep in sorted(self._requires[current]):
                if dep == name:
                    path = [current]
                    while path[-1] != name:
                        path.append(parent[path[-1]])
                    path.reverse()
                    return path
                if dep not in seen:
                    seen.add(dep)
                    parent[dep] = current
                    queue.append(dep)
        return []

    def topological_order(self) -> List[str]:
        """Kahn's algorithm, dependencies first, ties broken by ascending name."""
        return self._kahn(set(self._manifests))

    def dependency_order(self, name: str) -> List[str]:
        """Install order for `name` and its transitive required dependencies, ending with `name`."""
        self._require_node(name)
        scope = set(self.transitive_dependencies(name)) | {name}
        return self._kahn(scope)

    def _kahn(self, scope: Set[str]) -> List[str]:
        indegree: Dict[str, int] = {n: 0 for n in scope}
        for n in scope:
            indegree[n] = sum(1 for d in self._requires[n] if d in scope)
        heap = [n for n, deg in indegree.items() if deg == 0]
        heapq.heapify(heap)
        ordered: List[str] = []
        while heap:
            current = heapq.heappop(heap)
            ordered.append(current)
            for dependent in self._required_by[current]:
                if dependent not in scope:
                    continue
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(heap, dependent)
        if len(ordered) != len(scope):
            unscheduled = scope - set(ordered)
            cycles = [c for c in self.find_cycles() if unscheduled & set(c)]
            raise CircularDependencyError(cycles, unscheduled=sorted(unscheduled))
        return ordered

    # ---- transitive closure ----
    def transitive_dependencies(self, name: str) -> Dict[str, int]:
        """BFS over required edges; shortest depth wins."""
        self._require_node(name)
        depths: Dict[str, int] = {}
        queue = deque([(name, 0)])
        seen = {name}
        while queue:
            current, depth = queue.popleft()
            for dep in sorted(self._requires[current]):
                if dep in seen:
                    continue
                seen.add(dep)
                depths[dep] = depth + 1
                queue.append((dep, depth + 1))
        return depths

    def transitive_dependents(self, name: str) -> Set[str]:
        self._require_node(name)
        affected: Set[str] = set()
        queue = deque([name])
        while queue:
            current = queue.popleft()
            for dependent in self._required_by[current]:
                if dependent != name and dependent not in affected:
                    affected.add(dependent)
                    queue.append(dependent)
        return affected

    # ---- impact ----
    def impact_radius(self, name: str) -> int:
        return len(self.transitive_dependents(name))

    def criticality_score(self, name: str) -> float:
        direct = len(self.dependents(name))
        radius = self.impact_radius(name)
        return round(float(self.weights.direct_dependents) * direct + float(self.weights.impact_radius) * radius, 6)

    def analyze_impact(self, name: str) -> ImpactReport:
        self._require_node(name)
        man = self._manifests[name]

        direct: List[DirectDependency] = []
        for kind, targets in ((REQUIRED, man.required_dependencies), (OPTIONAL, man.optional_dependencies)):
            for dep in targets:
                dep_man = self._manifests.get(dep)
                direct.append(
                    DirectDependency(
                        name=dep,
                        kind=kind,
                        exists=dep_man is not None,
                        version=dep_man.version if dep_man is not None else None,
                        satisfied=dep_man is not None and self.state(dep) is ModuleState.ENABLED,
                    )
                )

        transitive = [
            TransitiveDependency(name=dep, depth=depth, version=self._manifests[dep].version)
            for dep, depth in sorted(self.transitive_dependencies(name).items(), key=lambda kv: (kv[1], kv[0]))
        ]

        required_by = set(self._required_by[name])
        dependents = [
            Dependent(name=d, kind=REQUIRED if d in required_by else OPTIONAL, version=self._manifests[d].version)
            for d in self.dependents(name)
        ]

        return ImpactReport(
            module=name,
            direct_dependencies=direct,
            transitive_dependencies=transitive,
            dependents=dependents,
            impact_radius=self.impact_radius(name),
            criticality_score=self.criticality_score(name),
        )

    def identify_hubs(self, threshold: Optional[int] = None) -> List[HubModule]:
        limit = self.hub_threshold if threshold is None else int(threshold)
        hubs = []
        for name in self.nodes():
            count = len(self.dependents(name))
            if count >= limit:
                hubs.append(HubModule(name=name, dependent_count=count, criticality_score=self.criticality_score(name)))
        hubs.sort(key=lambda h: (-h.criticality_score, h.name))
        return hubs

    # ---- clustering ----
    def clusters(self) -> List[Cluster]:
        parent: Dict[str, str] = {n: n for n in self._manifests}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        def union(a: str, b: str) -> None:
            ra, rb = find(a), find(b)
            if ra != rb:
                if rb < ra:
                    ra, rb = rb, ra
                parent[rb] = ra

        pairs: Set[Tuple[str, str]] = set()
        for name in self.nodes():
            for dep in self._requires[name] + self._optional[name]:
                union(name, dep)
                pairs.add((min(name, dep), max(name, dep)))

        groups: Dict[str, List[str]] = {}
        for name in self.nodes():
            groups.setdefault(find(name), []).append(name)

        members_list = sorted(groups.values(), key=lambda m: (-len(m), m[0]))
        out: List[Cluster] = []
        for idx, members in enumerate(members_list):
            size = len(members)
            density = 0.0
            if size > 1:
                member_set = set(members)
                within = sum(1 for a, b in pairs if a in member_set and b in member_set)
                density = round(within / (size * (size - 1) / 2), 6)
            out.append(Cluster(id=f"cluster_{idx}", modules=members, size=size, interconnection_density=density))
        return out

    # ---- whole-graph metrics ----
    def metrics(self) -> GraphMetrics:
        n = len(self._manifests)
        edges = sum(len(v) for v in self._requires.values())
        isolated = sum(
            1
            for name in self._manifests
            if not self._requires[name] and not self._optional[name] and not self._required_by[name] and not self._optional_by[name]
        )
        return GraphMetrics(
            nodes=n,
            edges=edges,
            density=round(edges / (n * (n - 1)), 6) if n > 1 else 0.0,
            average_degree=round((edges * 2) / n, 6) if n else 0.0,
            max_depth=self._max_depth(),
            circular_dependencies=len(self.find_cycles()),
            isolated_modules=isolated,
            hub_modules=[h.name for h in self.identify_hubs()],
        )

    def _max_depth(self) -> int:
        # Longest required chain, counted in nodes. Edges back onto the current
        # path are ignored so cyclic graphs still terminate.
        memo: Dict[str, int] = {}
        best = 0
        for root in self.nodes():
            if root in memo:
                best = max(best, memo[root])
                continue
            on_path: Set[str] = {root}
            stack: List[Tuple[str, Iterable[str], int]] = [(root, iter(self._requires[root]), 0)]
            while stack:
                node, it, acc = stack[-1]
                pushed = False
                for dep in it:
                    if dep in on_path:
                        continue
                    if dep in memo:
                        acc = max(acc, memo[dep])
                        continue
                    stack[-1] = (node, it, acc)
                    on_path.add(dep)
                    stack.append((dep, iter(self._requires[dep]), 0))
                    pushed = True
                    break
                if pushed:
                    continue
                stack.pop()
                on_path.discard(node)
                memo[node] = acc + 1
                if stack:
                    parent, pit, pacc = stack[-1]
                    stack[-1] = (parent, pit, max(pacc, memo[node]))
            best = max(best, memo[root])
        return best

    # ---- internals ----
    def _require_node(self, name: str) -> None:
        if name not in self._manifests:
            raise UnknownModuleError(name)
