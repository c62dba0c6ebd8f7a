"""
test_viewpoint_tree.py - 视点树 arena / 连接 / 剪枝测试
"""

import numpy as np
import pytest

from glocal_planner.errors import InvariantViolation
from glocal_planner.models import WayPoint
from glocal_planner.viewpoint_tree import ViewPoint, ViewpointTree


def _vp(x, y=0.0, z=0.0) -> ViewPoint:
    return ViewPoint(pose=WayPoint(x, y, z))


def _add(tree, grid_map, position, neighbors):
    """新建视点，连接 neighbors 并以第一条连接为 active"""
    vp = _vp(*position)
    for nb in neighbors:
        assert tree.try_add_connection(vp, nb, grid_map) is not None
    vp.active_connection = 0 if vp.connections else -1
    tree.add_point(vp)
    return vp


@pytest.fixture
def tree():
    t = ViewpointTree()
    t.reset(WayPoint(0.0, 0.0, 0.0))
    return t


class TestArena:
    """reset / add_point / 根节点"""

    def test_reset_single_root(self, tree):
        assert len(tree) == 1
        assert tree.root.is_root
        assert tree.root.node_id == 0
        tree.check_invariants()

    def test_uninitialized_root(self):
        with pytest.raises(InvariantViolation):
            ViewpointTree().root

    def test_duplicate_add(self, tree):
        with pytest.raises(InvariantViolation):
            tree.add_point(tree.root)

    def test_stable_ids_after_prune(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (2.0, 0.0, 0.0), [a])
        tree.remove_connection(b.connections[0][1])
        tree.remove_unreachable_points()
        c = _add(tree, open_map, (0.0, 1.0, 0.0), [tree.root])
        assert b.node_id not in tree
        assert c.node_id > b.node_id

    def test_set_root(self, tree, open_map):
        old = tree.root
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [old])
        tree.set_root(a)
        assert tree.root is a
        assert not old.is_root


class TestConnections:
    """try_add_connection / remove_connection"""

    def test_symmetric_add(self, tree, open_map):
        vp = _vp(2.0)
        conn = tree.try_add_connection(vp, tree.root, open_map)
        assert conn is not None
        assert vp.connections == [(True, conn)]
        assert tree.root.connections == [(False, conn)]
        assert conn.cost == pytest.approx(2.0)
        assert vp.get_connected_id(0) == tree.root.node_id
        assert tree.root.get_connected_id(0) == vp.node_id

    def test_path_points_include_endpoints(self, tree, open_map):
        vp = _vp(2.0, 1.0)
        conn = tree.try_add_connection(vp, tree.root, open_map)
        length = float(np.hypot(2.0, 1.0))
        assert len(conn.path_points) == max(1, int(np.floor(length / 0.1))) + 1
        np.testing.assert_allclose(conn.path_points[0], [2.0, 1.0, 0.0])
        np.testing.assert_allclose(conn.path_points[-1], [0.0, 0.0, 0.0])

    def test_short_connection_two_points(self, tree, open_map):
        conn = tree.try_add_connection(_vp(0.05), tree.root, open_map)
        assert len(conn.path_points) == 2

    def test_blocked(self, tree, open_map):
        open_map.block([0.9, -0.5, -0.5], [1.1, 0.5, 0.5])
        vp = _vp(2.0)
        assert tree.try_add_connection(vp, tree.root, open_map) is None
        assert vp.connections == []
        assert tree.root.connections == []

    def test_remove_adjusts_active_index(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (1.0, 1.0, 0.0), [tree.root])
        c = _add(tree, open_map, (2.0, 0.0, 0.0), [a, b, tree.root])
        c.active_connection = 2
        tree.remove_connection(c.connections[0][1])
        assert c.active_connection == 1
        assert c.get_connected_id(1) == tree.root.node_id
        assert len(a.connections) == 1

        tree.remove_connection(c.connections[1][1])
        assert c.active_connection == -1
        assert not c.has_valid_active_connection()

    def test_remove_twice_raises(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        conn = a.connections[0][1]
        tree.remove_connection(conn)
        with pytest.raises(InvariantViolation):
            tree.remove_connection(conn)

    def test_parent_children(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (2.0, 0.0, 0.0), [a])
        assert tree.get_parent(b) is a
        assert tree.get_parent(tree.root) is None
        assert tree.get_children(tree.root) == [a]
        assert tree.get_children(a) == [b]
        assert tree.n_connections == 2


class TestReachability:
    """连通性 / 修复 / 剪枝"""

    def test_prune_unreachable(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (2.0, 0.0, 0.0), [a])
        tree.remove_connection(b.connections[0][1])
        assert tree.remove_unreachable_points() == 1
        assert b.node_id not in tree
        assert [vp.node_id for vp in tree.find_nearest_neighbors([2.0, 0.0, 0.0], k=5)] \
            == [a.node_id, tree.root.node_id]
        tree.check_invariants()

    def test_keep_reachable_via_inactive(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (2.0, 0.0, 0.0), [a, tree.root])
        tree.remove_connection(a.connections[0][1])
        # a 仍可经 b 到达根
        assert tree.remove_unreachable_points() == 0
        # b 的 active 指向 a，a 的 active 已失效：只有根节点经 active 连通
        assert tree.compute_points_connected_to_root(only_active_connections=True) == 1
        assert tree.repair_active_connections() == 2
        assert tree.get_parent(b) is tree.root
        assert tree.get_parent(a) is b
        tree.check_invariants()

    def test_repair_undefined_active(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        a.active_connection = -1
        with pytest.raises(InvariantViolation):
            tree.check_invariants()
        tree.repair_active_connections()
        tree.check_invariants()

    def test_cycle_detected(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (2.0, 0.0, 0.0), [a])
        # a → b, b → a
        a_to_b = next(i for i in range(len(a.connections))
                      if a.get_connected_id(i) == b.node_id)
        a.active_connection = a_to_b
        with pytest.raises(InvariantViolation):
            tree.active_chain_reaches_root(a)

    def test_isolated_point(self, tree):
        lone = _vp(5.0)
        tree.add_point(lone)
        assert not tree.active_chain_reaches_root(lone)
        tree.check_invariants(require_all_connected=False)
        with pytest.raises(InvariantViolation):
            tree.check_invariants()


class TestNearest:

    def test_nearest_order(self, tree, open_map):
        a = _add(tree, open_map, (1.0, 0.0, 0.0), [tree.root])
        b = _add(tree, open_map, (3.0, 0.0, 0.0), [a])
        result = tree.find_nearest_neighbors([2.9, 0.0, 0.0], k=2)
        assert result == [b, a]
