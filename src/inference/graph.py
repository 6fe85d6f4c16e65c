"""
Directed acyclic model graph with cached, incrementally re-evaluated nodes.

A hierarchical model is a set of nodes:
- StochasticNode: a latent parameter or an observed data block with a
  log density conditional on its parents
- DeterministicNode: a pure function of its parents (curve means, trial
  effects, transformed parameters)

Each node caches its last result (value for deterministic nodes, log density
for stochastic nodes) together with a dirty flag. Assigning a stochastic
value marks everything downstream dirty; caches are only recomputed on
demand, in topological order through parent lookups.

Invariant: a dirty deterministic node has only dirty descendants, so dirty
propagation stops at the first already-dirty node.
"""

from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import numpy as np

from inference.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Structure(str, Enum):
    """Static structural class of a latent node, used to pick its update kernel."""

    CONJUGATE_NORMAL = "conjugate_normal"
    CONJUGATE_GAMMA = "conjugate_gamma"
    BOUNDED_CONTINUOUS = "bounded_continuous"
    UNCONSTRAINED_BLOCK = "unconstrained_block"
    INDICATOR_PAIR = "indicator_pair"


class Node:
    """Base graph node."""

    def __init__(self, name: str, parents: Sequence["Node"] = ()) -> None:
        self.name = name
        self.parents: List[Node] = list(parents)
        self.children: List[Node] = []
        self._cache: Any = None
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    def invalidate(self) -> None:
        """Mark this node's cache stale and propagate downstream."""
        raise NotImplementedError

    def parent_values(self) -> List[Any]:
        return [parent.value for parent in self.parents]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class DeterministicNode(Node):
    """Node whose value is a cached function of its parents' values."""

    def __init__(
        self,
        name: str,
        fn: Callable[..., Any],
        parents: Sequence[Node],
    ) -> None:
        super().__init__(name, parents)
        self.fn = fn

    @property
    def value(self) -> Any:
        if self._dirty:
            self._cache = self.fn(*self.parent_values())
            self._dirty = False
        return self._cache

    def invalidate(self) -> None:
        if self._dirty:
            return
        self._dirty = True
        for child in self.children:
            child.invalidate()


class StochasticNode(Node):
    """
    Random node with a log density conditional on its parents.

    Parameters
    ----------
    name : str
        Unique node name, e.g. "e[0]".
    value : Any
        Initial (latent) or fixed (observed) value.
    log_density : callable
        ``log_density(value, *parent_values) -> float``. May raise
        DomainViolationError or NumericInstabilityError.
    parents : sequence of Node
        Nodes the density is conditioned on.
    structure : Structure, optional
        Structural class for latent nodes; selects the update kernel.
    observed : bool
        True for data nodes, which are never updated.
    meta : dict, optional
        Prior hyperparameters and bounds read by update kernels.
    """

    def __init__(
        self,
        name: str,
        value: Any,
        log_density: Callable[..., float],
        parents: Sequence[Node] = (),
        structure: Optional[Structure] = None,
        observed: bool = False,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(name, parents)
        self._value = value
        self._log_density = log_density
        self.structure = structure
        self.observed = observed
        self.meta: Dict[str, Any] = dict(meta or {})

    @property
    def value(self) -> Any:
        return self._value

    @value.setter
    def value(self, new_value: Any) -> None:
        if self.observed:
            raise ConfigurationError(f"Cannot assign to observed node {self.name}")
        self._value = new_value
        self._dirty = True
        for child in self.children:
            child.invalidate()

    def invalidate(self) -> None:
        # A parent changed: only this node's log density is stale, its value is not.
        self._dirty = True

    def log_prob(self) -> float:
        if self._dirty:
            self._cache = float(self._log_density(self._value, *self.parent_values()))
            self._dirty = False
        return self._cache


Snapshot = List[Tuple[Node, Any, bool, Any]]


class ModelGraph:
    """
    Container for model nodes with topological ordering and dependency lookup.

    Attributes
    ----------
    nodes : Dict[str, Node]
        Nodes in declaration order.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, Node] = {}
        self._order: Optional[List[Node]] = None
        self._downstream: Dict[str, List[Node]] = {}
        self._dependents: Dict[str, List[StochasticNode]] = {}

    def _add(self, node: Node) -> Node:
        if node.name in self.nodes:
            raise ConfigurationError(f"Duplicate node name {node.name!r}")
        for parent in node.parents:
            if self.nodes.get(parent.name) is not parent:
                raise ConfigurationError(
                    f"Parent {parent.name!r} of {node.name!r} is not in the graph"
                )
            parent.children.append(node)
        self.nodes[node.name] = node
        self._order = None
        self._downstream.clear()
        self._dependents.clear()
        return node

    def add_stochastic(
        self,
        name: str,
        value: Any,
        log_density: Callable[..., float],
        parents: Sequence[Node] = (),
        structure: Optional[Structure] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StochasticNode:
        """Add a latent random node."""
        if structure is None:
            raise ConfigurationError(f"Latent node {name!r} needs a structural class")
        return self._add(
            StochasticNode(name, value, log_density, parents, structure, False, meta)
        )

    def add_observed(
        self,
        name: str,
        data: Any,
        log_density: Callable[..., float],
        parents: Sequence[Node],
        meta: Optional[Dict[str, Any]] = None,
    ) -> StochasticNode:
        """Add an observed data node."""
        return self._add(
            StochasticNode(name, data, log_density, parents, None, True, meta)
        )

    def add_deterministic(
        self,
        name: str,
        fn: Callable[..., Any],
        parents: Sequence[Node],
    ) -> DeterministicNode:
        """Add a deterministic node."""
        return self._add(DeterministicNode(name, fn, parents))

    def __getitem__(self, name: str) -> Node:
        try:
            return self.nodes[name]
        except KeyError:
            raise KeyError(f"No node named {name!r}")

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def topological_order(self) -> List[Node]:
        """Nodes ordered so that every parent precedes its children."""
        if self._order is None:
            sorter = TopologicalSorter(
                {name: [p.name for p in node.parents] for name, node in self.nodes.items()}
            )
            try:
                names = list(sorter.static_order())
            except CycleError as exc:
                raise ConfigurationError(f"Model graph has a cycle: {exc.args[1]}")
            self._order = [self.nodes[name] for name in names]
        return self._order

    def latent_nodes(self) -> List[StochasticNode]:
        return [
            node
            for node in self.topological_order()
            if isinstance(node, StochasticNode) and not node.observed
        ]

    def observed_nodes(self) -> List[StochasticNode]:
        return [
            node
            for node in self.topological_order()
            if isinstance(node, StochasticNode) and node.observed
        ]

    def downstream(self, node: Node) -> List[Node]:
        """
        ``node`` plus every node whose cached state depends on its value, in
        topological order.

        Deterministic descendants are followed transitively; stochastic
        children end the walk, since their values do not change.
        """
        if node.name not in self._downstream:
            seen = {node.name}
            stack = list(node.children)
            while stack:
                child = stack.pop()
                if child.name in seen:
                    continue
                seen.add(child.name)
                if isinstance(child, DeterministicNode):
                    stack.extend(child.children)
            self._downstream[node.name] = [
                n for n in self.topological_order() if n.name in seen
            ]
        return self._downstream[node.name]

    def dependents(self, node: StochasticNode) -> List[StochasticNode]:
        """The node itself plus every stochastic node whose density it enters."""
        if node.name not in self._dependents:
            self._dependents[node.name] = [
                n for n in self.downstream(node) if isinstance(n, StochasticNode)
            ]
        return self._dependents[node.name]

    def log_prob(self, nodes: Optional[Iterable[StochasticNode]] = None) -> float:
        """Sum of log densities over ``nodes`` (all stochastic nodes if None)."""
        if nodes is None:
            nodes = [n for n in self.topological_order() if isinstance(n, StochasticNode)]
        total = 0.0
        for node in nodes:
            total += node.log_prob()
        return total

    @staticmethod
    def snapshot(nodes: Iterable[Node]) -> Snapshot:
        """Capture cache state of ``nodes`` (and stochastic values) for restore."""
        return [
            (
                node,
                node._cache,
                node._dirty,
                node._value if isinstance(node, StochasticNode) else None,
            )
            for node in nodes
        ]

    @staticmethod
    def restore(snapshot: Snapshot) -> None:
        """Restore a snapshot taken by :meth:`snapshot` without re-evaluation."""
        for node, cache, dirty, value in snapshot:
            node._cache = cache
            node._dirty = dirty
            if isinstance(node, StochasticNode):
                node._value = value

    def values(self, names: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Current values of the named nodes (all latent and deterministic if None)."""
        if names is None:
            names = [
                n.name
                for n in self.topological_order()
                if not (isinstance(n, StochasticNode) and n.observed)
            ]
        return {name: self.nodes[name].value for name in names}

    def __repr__(self) -> str:
        n_latent = len(self.latent_nodes())
        return f"ModelGraph(nodes={len(self.nodes)}, latent={n_latent})"
