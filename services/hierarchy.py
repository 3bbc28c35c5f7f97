# services/hierarchy.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from schemas import MeterInfo

ConnectionsMap = Dict[int, List[int]]
M = TypeVar("M", bound=MeterInfo)


def build_connections_map(connections: Iterable[Tuple[int, int]]) -> ConnectionsMap:
    """(parent_id, child_id) pairs -> {parent_id: [child_id, ...]} in input order."""
    out: ConnectionsMap = {}
    for parent_id, child_id in connections:
        children = out.setdefault(parent_id, [])
        if child_id not in children:
            children.append(child_id)
    return out


def is_parent(meter_id: int, connections_map: ConnectionsMap) -> bool:
    return bool(connections_map.get(meter_id))


def hierarchy_depths(
    connections_map: ConnectionsMap,
    meter_ids: Optional[Iterable[int]] = None,
    memo: Optional[Dict[int, int]] = None,
) -> Dict[int, int]:
    """
    Depth of every requested meter (all parents by default), each node computed once.

    0 for a meter without children, else 1 + deepest child. A meter met again
    on the current descent path counts as depth 0.
    """
    depths: Dict[int, int] = {} if memo is None else memo
    on_path: Set[int] = set()

    def _depth(mid: int) -> int:
        if mid in depths:
            return depths[mid]
        if mid in on_path:
            return 0
        children = connections_map.get(mid) or []
        if not children:
            depths[mid] = 0
            return 0
        on_path.add(mid)
        d = 1 + max(_depth(c) for c in children)
        on_path.discard(mid)
        depths[mid] = d
        return d

    for mid in (connections_map if meter_ids is None else meter_ids):
        _depth(mid)
    return depths


def hierarchy_depth(meter_id: int, connections_map: ConnectionsMap) -> int:
    return hierarchy_depths(connections_map, [meter_id])[meter_id]


def order_parents(parent_meters: Sequence[M], connections_map: ConnectionsMap) -> List[M]:
    """
    Bottom-up order: shallow parents (closest to the leaves) first, so every
    parent is generated after all of its descendant parents.
    Equal depths fall back to descending meter number.
    """
    depths = hierarchy_depths(connections_map, [m.id for m in parent_meters])
    by_number = sorted(parent_meters, key=lambda m: m.meter_number, reverse=True)
    return sorted(by_number, key=lambda m: depths[m.id])


def leaf_descendants(meter_ids: Iterable[int], connections_map: ConnectionsMap) -> List[int]:
    """All leaf meters reachable from meter_ids (a leaf given directly is returned as-is)."""
    out: List[int] = []
    seen: Set[int] = set()
    stack = list(meter_ids)[::-1]
    while stack:
        mid = stack.pop()
        if mid in seen:
            continue
        seen.add(mid)
        children = connections_map.get(mid) or []
        if not children:
            out.append(mid)
        else:
            stack.extend(reversed(children))
    return out


def find_cycle(connections_map: ConnectionsMap) -> Optional[List[int]]:
    """Return one cycle as [a, b, ..., a], or None when the graph is acyclic."""
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[int, int] = {}

    for root in connections_map:
        if color.get(root, WHITE) != WHITE:
            continue
        stack: List[Tuple[int, int]] = [(root, 0)]
        path: List[int] = []
        while stack:
            node, idx = stack.pop()
            if idx == 0:
                color[node] = GREY
                path.append(node)
            children = connections_map.get(node) or []
            if idx < len(children):
                stack.append((node, idx + 1))
                child = children[idx]
                state = color.get(child, WHITE)
                if state == GREY:
                    return path[path.index(child):] + [child]
                if state == WHITE:
                    stack.append((child, 0))
            else:
                color[node] = BLACK
                path.pop()
    return None
