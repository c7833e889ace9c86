"""Tests for the shared map: mutators, transactions and spanning tree."""

import numpy as np
import pytest

from covislam.errors import MapInconsistency
from covislam.map import Map

from .conftest import MapBuilder, pose_from


@pytest.fixture
def chain(builder: MapBuilder) -> list[int]:
    """Three keyframes moving right, each parented to the previous one."""
    kf0 = builder.add_keyframe(pose_from())
    kf1 = builder.add_keyframe(pose_from(translation=(0.1, 0, 0)), parent_id=kf0.id)
    kf2 = builder.add_keyframe(pose_from(translation=(0.2, 0, 0)), parent_id=kf1.id)
    return [kf0.id, kf1.id, kf2.id]


class TestMapStructure:
    """Test suite for keyframe and map point bookkeeping."""

    def test_invariants_hold(self, map_: Map, chain: list[int]):
        """Test that a built chain satisfies the map invariants."""
        map_.check_invariants()
        assert map_.num_keyframes == 3
        assert map_.root_id == chain[0]
        assert map_.parent(chain[2]) == chain[1]

    def test_covisibility_counts_shared_points(self, map_: Map, chain: list[int]):
        """Test that covisibility weights count shared points."""
        kf0 = map_.keyframe(chain[0])
        kf1 = map_.keyframe(chain[1])
        shared = kf0.observed_point_ids() & kf1.observed_point_ids()
        assert map_.covisibility_weight(chain[0], chain[1]) == len(shared)
        assert map_.covisible_keyframes(chain[1])[0] in (chain[0], chain[2])

    def test_stereo_observations_weigh_double(self, map_: Map, chain: list[int]):
        """Test that stereo observations count twice."""
        mp_id = next(iter(map_.keyframe(chain[0]).observed_point_ids()))
        mp = map_.map_point(mp_id)
        assert mp.n_obs == 2 * len(mp.observers)

    def test_second_root_rejected(self, map_: Map, builder: MapBuilder, chain: list[int]):
        """Test that only the first keyframe may be parentless."""
        with pytest.raises(MapInconsistency):
            builder.add_keyframe(pose_from(translation=(0.3, 0, 0)))
        map_.check_invariants()
        assert map_.num_keyframes == 3

    def test_point_removed_with_last_observer(self, map_: Map, builder: MapBuilder):
        """Test that a point disappears with its last observation."""
        kf = builder.add_keyframe(pose_from())
        mp_id = int(kf.map_points[0])
        map_.erase_observation(mp_id, kf.id)
        assert not map_.has_map_point(mp_id)
        assert kf.map_points[0] == -1
        map_.check_invariants()

    def test_replace_map_point(self, map_: Map, chain: list[int]):
        """Test that a fused point resolves to its survivor."""
        kf2 = map_.keyframe(chain[2])
        a, b = sorted(kf2.observed_point_ids())[:2]
        map_.replace_map_point(a, b)
        assert not map_.has_map_point(a)
        assert map_.resolve_point(a) == b
        map_.check_invariants()

    def test_long_replacement_chain_resolves(self, map_: Map, chain: list[int]):
        """Test that a long fusion chain resolves to its survivor and is compressed."""
        ids = sorted(map_.keyframe(chain[2]).observed_point_ids())[:101]
        for old_id, new_id in zip(ids, ids[1:]):
            map_.replace_map_point(old_id, new_id)

        assert map_.resolve_point(ids[0]) == ids[-1]
        assert map_._replaced[ids[0]] == ids[-1]
        assert map_._replaced[ids[50]] == ids[-1]
        map_.check_invariants()

    def test_chain_not_compressed_inside_rolled_back_transaction(self, map_: Map, chain: list[int]):
        """Test that resolving inside a transaction does not survive its rollback."""
        a, b, c, d = sorted(map_.keyframe(chain[2]).observed_point_ids())[:4]
        map_.replace_map_point(a, b)
        map_.replace_map_point(b, c)

        with pytest.raises(RuntimeError):
            with map_.transaction():
                map_.replace_map_point(c, d)
                assert map_.resolve_point(a) == d
                raise RuntimeError("abort")

        assert map_.has_map_point(c)
        assert map_.resolve_point(a) == c
        map_.check_invariants()

    def test_geometry_distance_range(self, map_: Map, chain: list[int]):
        """Test that a point's distance range ends at its reference distance."""
        mp = map_.map_points()[0]
        ref = map_.keyframe(mp.reference_keyframe_id)
        distance = np.linalg.norm(mp.position - ref.pose.translation)
        assert mp.max_distance == pytest.approx(distance)
        assert mp.min_distance < mp.max_distance
        assert np.linalg.norm(mp.normal) == pytest.approx(1.0)

    def test_snapshot(self, map_: Map, chain: list[int]):
        """Test that a snapshot copies poses and points."""
        snap = map_.snapshot()
        assert list(snap.keyframe_ids) == chain
        assert snap.keyframe_poses.shape == (3, 4, 4)
        assert snap.point_positions.shape == (map_.num_map_points, 3)
        assert (chain[0], chain[1]) in snap.spanning_edges
        assert snap.revision == map_.revision


class TestTransactions:
    """Test suite for rollback of failed multi-step mutations."""

    def test_rollback_restores_map(self, map_: Map, builder: MapBuilder, chain: list[int]):
        """Test that a failed transaction restores every change."""
        revision = map_.revision
        n_points = map_.num_map_points
        kf2 = map_.keyframe(chain[2])
        mp_id = next(iter(kf2.observed_point_ids()))
        observers = dict(map_.map_point(mp_id).observers)

        with pytest.raises(RuntimeError):
            with map_.transaction():
                map_.erase_map_point(mp_id)
                map_.erase_keyframe(chain[1])
                raise RuntimeError("abort")

        assert map_.revision == revision
        assert map_.num_map_points == n_points
        assert map_.has_keyframe(chain[1])
        assert map_.parent(chain[2]) == chain[1]
        assert map_.map_point(mp_id).observers == observers
        map_.check_invariants()

    def test_failed_keyframe_insertion_rolls_back(self, map_: Map, builder: MapBuilder, chain: list[int]):
        """Test that a rejected keyframe leaves no trace."""
        revision = map_.revision
        ids_before = map_.keyframe_ids()
        with pytest.raises(RuntimeError):
            with map_.transaction():
                builder.add_keyframe(pose_from(translation=(0.3, 0, 0)), parent_id=chain[2])
                raise RuntimeError("abort")
        assert map_.keyframe_ids() == ids_before
        assert map_.revision == revision
        map_.check_invariants()

    def test_clear_inside_transaction_rejected(self, map_: Map, chain: list[int]):
        """Test that the map cannot be cleared inside a transaction."""
        with pytest.raises(MapInconsistency):
            with map_.transaction():
                map_.clear()


class TestKeyframeErasure:
    """Test suite for keyframe culling and spanning-tree repair."""

    def test_root_is_kept(self, map_: Map, chain: list[int]):
        """Test that the root keyframe is never erased."""
        assert not map_.erase_keyframe(chain[0])

    def test_erase_reparents_children(self, map_: Map, chain: list[int]):
        """Test that erasing a keyframe reparents its children."""
        pose = map_.keyframe(chain[1]).pose.copy()
        with map_.transaction():
            assert map_.erase_keyframe(chain[1])
        assert not map_.has_keyframe(chain[1])
        assert map_.parent(chain[2]) == chain[0]
        map_.check_invariants()

        np.testing.assert_allclose(map_.resolve_pose(chain[1]).to_matrix(), pose.to_matrix())
        assert map_.resolve_keyframe(chain[1]) == chain[0]

    def test_erased_pose_follows_parent_correction(self, map_: Map, chain: list[int]):
        """Test that an erased keyframe's pose follows its parent."""
        map_.erase_keyframe(chain[1])
        shift = pose_from(translation=(0, 1, 0))
        map_.set_keyframe_pose(chain[0], shift @ map_.keyframe(chain[0]).pose)
        np.testing.assert_allclose(map_.resolve_pose(chain[1]).translation, [0.1, 1.0, 0.0])

    def test_loop_edge_prevents_erasure(self, map_: Map, chain: list[int]):
        """Test that loop keyframes are never erased."""
        map_.add_loop_edge(chain[1], chain[2])
        assert not map_.erase_keyframe(chain[1])
        assert map_.has_keyframe(chain[1])

    def test_pinned_keyframe_erased_on_unpin(self, map_: Map, chain: list[int]):
        """Test that a pinned keyframe is erased once unpinned."""
        map_.pin(chain[1])
        assert not map_.erase_keyframe(chain[1])
        assert map_.has_keyframe(chain[1])
        map_.unpin(chain[1])
        assert not map_.has_keyframe(chain[1])
        map_.check_invariants()

    def test_reparenting_cycle_rejected(self, map_: Map, chain: list[int]):
        """Test that reparenting cannot create a cycle."""
        with pytest.raises(MapInconsistency):
            map_.change_parent(chain[0], chain[2])


class TestClear:
    """Test suite for resetting the map."""

    def test_clear_starts_new_epoch(self, map_: Map, chain: list[int]):
        """Test that clearing empties the map and bumps the epoch."""
        epoch = map_.epoch
        map_.clear()
        assert map_.epoch == epoch + 1
        assert map_.num_keyframes == 0
        assert map_.num_map_points == 0
        assert map_.root_id is None
        assert map_.resolve_pose(chain[1]) is None

    def test_ids_are_not_reused(self, map_: Map, chain: list[int]):
        """Test that keyframe ids keep increasing across a clear."""
        map_.clear()
        assert map_.new_keyframe_id() > max(chain)

    def test_advance_ids(self, map_: Map, builder: MapBuilder):
        """Test that id counters continue from the given values."""
        map_.advance_ids(50, 900)
        kf = builder.add_keyframe(pose_from())
        assert kf.id == 50
        assert min(kf.observed_point_ids()) == 900
