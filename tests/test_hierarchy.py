from services.hierarchy import (
    build_connections_map,
    find_cycle,
    hierarchy_depth,
    hierarchy_depths,
    is_parent,
    leaf_descendants,
    order_parents,
)

# 1 -> 2 -> 4 -> 5, 1 -> 3
TREE = {1: [2, 3], 2: [4], 4: [5]}


def test_build_connections_map_keeps_order_and_dedupes():
    cmap = build_connections_map([(1, 2), (1, 3), (2, 4), (1, 2)])
    assert cmap == {1: [2, 3], 2: [4]}
    assert is_parent(1, cmap)
    assert not is_parent(3, cmap)


def test_depth():
    assert hierarchy_depth(5, TREE) == 0
    assert hierarchy_depth(4, TREE) == 1
    assert hierarchy_depth(2, TREE) == 2
    assert hierarchy_depth(1, TREE) == 3


def test_children_before_ancestors(make_meter):
    parents = [make_meter(1, "A"), make_meter(2, "B"), make_meter(4, "C")]
    ordered = [m.id for m in order_parents(parents, TREE)]
    assert ordered == [4, 2, 1]

    for parent_id, children in TREE.items():
        for child in children:
            if child in ordered:
                assert ordered.index(child) < ordered.index(parent_id)


def test_equal_depth_sorted_by_descending_meter_number(make_meter):
    cmap = {10: [11], 20: [21]}
    parents = [make_meter(10, "DB-01"), make_meter(20, "DB-02")]
    assert [m.meter_number for m in order_parents(parents, cmap)] == ["DB-02", "DB-01"]


def test_cycle_depth_terminates():
    cmap = {1: [2], 2: [1]}
    assert hierarchy_depth(1, cmap) == 2
    assert hierarchy_depth(2, cmap) == 2


def test_find_cycle():
    assert find_cycle({1: [2], 2: [1]}) == [1, 2, 1]
    assert find_cycle({1: [2, 3], 2: [3]}) is None
    assert find_cycle(TREE) is None


def test_leaf_descendants():
    assert leaf_descendants([1], TREE) == [5, 3]
    assert leaf_descendants([2, 3], TREE) == [5, 3]
    assert leaf_descendants([9], TREE) == [9]


def _lattice(levels: int) -> dict:
    """Two meters per level; both feed both meters of the next level down."""
    cmap = {}
    for level in range(levels):
        a, b = 2 * level, 2 * level + 1
        cmap[a] = cmap[b] = [2 * level + 2, 2 * level + 3]
    return cmap


def test_depth_on_shared_descendants_is_linear(make_meter):
    cmap = _lattice(40)  # 2**40 descent paths without memoisation

    assert hierarchy_depth(0, cmap) == 40
    depths = hierarchy_depths(cmap)
    assert depths[0] == depths[1] == 40
    assert depths[78] == 1
    assert depths[80] == 0

    parents = [make_meter(mid, f"M{mid:03d}") for mid in cmap]
    ordered = [m.id for m in order_parents(parents, cmap)]
    assert ordered[:2] == [79, 78]
    assert ordered[-2:] == [1, 0]
