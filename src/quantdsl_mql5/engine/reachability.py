# src/quantdsl_mql5/engine/reachability.py

from __future__ import annotations

from collections import defaultdict, deque
from typing import Dict, Iterable, List, Set

from ..dsl.graph import Edge, Node
from ..dsl.nodes import FilterData, TimingData
from ..utils.logging import get_logger


log = get_logger(__name__)


def is_root(node: Node) -> bool:
    return isinstance(node.data, TimingData)


def _always_kept(node: Node) -> bool:
    return isinstance(node.data, (TimingData, FilterData))


def reachable_ids(nodes: Iterable[Node], edges: Iterable[Edge]) -> Set[str]:
    """
    Ids reachable by directed traversal from all timing nodes.

    One adjacency map, one BFS seeded with every root: O(nodes + edges).
    A graph without any timing node has no gate, so everything is live.
    """
    nodes = list(nodes)
    roots = [n.id for n in nodes if is_root(n)]
    if not roots:
        return {n.id for n in nodes}

    adjacency: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)

    seen: Set[str] = set(roots)
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, ()):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def filter_reachable(nodes: List[Node], edges: List[Edge]) -> List[Node]:
    """
    Drop dead nodes, preserving document order. Timing and filter nodes
    survive regardless of their edges.
    """
    live = reachable_ids(nodes, edges)
    kept: List[Node] = []
    for node in nodes:
        if node.id in live or _always_kept(node):
            kept.append(node)
        else:
            log.warning("Dropping unreachable node '%s' (%s)", node.id, node.kind)
    return kept
