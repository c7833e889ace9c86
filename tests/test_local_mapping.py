"""Tests for the Local Mapper and its background worker loop."""

import time

import numpy as np
import pytest

from covislam.backend.local_mapping import LocalMapper
from covislam.backend.messages import KeyFrameRequest
from covislam.config import SLAMConfig
from covislam.frontend import PinholeCamera
from covislam.frontend.matcher import FeatureMatcher
from covislam.loop_closure import KeyFrameDatabase, VisualVocabulary
from covislam.map import KeyFrame, Map

from .conftest import MapBuilder, SyntheticScene, pose_from


@pytest.fixture
def database() -> KeyFrameDatabase:
    return KeyFrameDatabase()


@pytest.fixture
def mapper(
    slam_config: SLAMConfig,
    camera: PinholeCamera,
    map_: Map,
    vocabulary: VisualVocabulary,
    database: KeyFrameDatabase,
):
    mapper = LocalMapper(
        slam_config, camera, map_, vocabulary, database, FeatureMatcher(map_.pyramid)
    )
    yield mapper
    mapper.shutdown(timeout=5.0)


def tracked_keyframe(map_: Map, builder: MapBuilder, scene: SyntheticScene, pose) -> KeyFrame:
    """A keyframe as the Tracker would hand it over: matched slots, not yet in the map."""
    obs = scene.observe(pose)
    map_points = np.array(
        [builder.point_of_landmark.get(int(l), -1) for l in obs.landmark_ids], dtype=np.int64
    )
    return KeyFrame(
        id=map_.new_keyframe_id(),
        frame_id=100,
        timestamp=10.0,
        pose=pose,
        keypoints=obs.keypoints,
        descriptors=obs.descriptors,
        octaves=obs.octaves,
        right_u=obs.right_u,
        depth=obs.depth,
        map_points=map_points,
    )


class TestKeyframeInsertion:
    """Test suite for step 1 of the mapping cycle."""

    def test_insert_tracked_keyframe(
        self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene: SyntheticScene, database
    ):
        """Test that insertion registers the keyframe and its observations."""
        root = builder.add_keyframe(pose_from())
        keyframe = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        # One unmatched close point, handed over as a provisional point
        free_slot = 0
        keyframe.map_points[free_slot] = -1
        position = keyframe.pose.transform_point(
            scene.camera.unproject(keyframe.keypoints[:1], keyframe.depth[:1])[0]
        )
        new_points = [(free_slot, position)]

        result = mapper.process_request(
            KeyFrameRequest(keyframe=keyframe, parent_id=root.id, new_points=new_points, epoch=map_.epoch)
        )

        assert result.inserted
        assert map_.parent(keyframe.id) == root.id
        assert keyframe.id in database
        assert map_.keyframe(keyframe.id).bow is not None
        assert map_.covisibility_weight(root.id, keyframe.id) > 0
        assert map_.keyframe(keyframe.id).map_points[free_slot] >= 0
        map_.check_invariants()

    def test_stale_request_dropped(self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene):
        """Test that a request from an earlier epoch is dropped."""
        root = builder.add_keyframe(pose_from())
        keyframe = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        request = KeyFrameRequest(keyframe=keyframe, parent_id=root.id, epoch=map_.epoch - 1)
        result = mapper.process_request(request)
        assert not result.inserted
        assert "stale" in result.message
        assert not map_.has_keyframe(keyframe.id)

    def test_vanished_parent_falls_back_to_reference(
        self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene
    ):
        """Test that a missing parent is replaced by the reference keyframe."""
        root = builder.add_keyframe(pose_from())
        map_.reference_keyframe_id = root.id
        keyframe = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        mapper.process_request(KeyFrameRequest(keyframe=keyframe, parent_id=12345, epoch=map_.epoch))
        assert map_.parent(keyframe.id) == root.id


class TestMappingCycle:
    """Test suite for the full cycle on redundant keyframes."""

    def test_redundant_keyframes_culled(
        self, mapper: LocalMapper, map_: Map, builder: MapBuilder, database: KeyFrameDatabase
    ):
        """Test that keyframes seen by enough others are culled."""
        ids = []
        parent = None
        for i in range(5):
            kf = builder.add_keyframe(pose_from(translation=(0.01 * i, 0, 0)), parent_id=parent)
            ids.append(kf.id)
            parent = kf.id
        root_pose = map_.keyframe(ids[0]).pose.to_matrix()

        result = mapper.process_request(
            KeyFrameRequest(
                keyframe=map_.keyframe(ids[-1]),
                parent_id=ids[-2],
                epoch=map_.epoch,
                registered=True,
            )
        )

        assert result.inserted
        assert result.created_points == 0  # baseline below the stereo baseline
        assert result.culled_keyframes >= 1
        assert map_.num_keyframes == 5 - result.culled_keyframes
        assert map_.has_keyframe(ids[0]) and map_.has_keyframe(ids[-1])
        np.testing.assert_allclose(map_.keyframe(ids[0]).pose.to_matrix(), root_pose)
        map_.check_invariants()
        for kf_id in ids[1:-1]:
            if not map_.has_keyframe(kf_id):
                assert kf_id not in database
                assert map_.resolve_keyframe(kf_id) is not None

    def test_local_ba_keeps_exact_map(self, mapper: LocalMapper, map_: Map, builder: MapBuilder):
        """Test that local BA leaves an exact map in place."""
        poses = [pose_from((0, 2 * i, 0), (0.3 * i, 0, 0)) for i in range(3)]
        ids = []
        parent = None
        for pose in poses:
            kf = builder.add_keyframe(pose, parent_id=parent)
            ids.append(kf.id)
            parent = kf.id

        result = mapper.process_request(
            KeyFrameRequest(keyframe=map_.keyframe(ids[-1]), parent_id=ids[-2], epoch=map_.epoch, registered=True)
        )
        assert result.ba_result is not None
        for kf_id, pose in zip(ids, poses):
            if map_.has_keyframe(kf_id):
                np.testing.assert_allclose(map_.keyframe(kf_id).pose.translation, pose.translation, atol=1e-3)
        map_.check_invariants()

    def test_new_keyframe_interrupts_local_ba(
        self, mapper: LocalMapper, map_: Map, builder: MapBuilder, monkeypatch
    ):
        """Test that a keyframe queued during local BA stops it and keeps its best estimate."""
        poses = [pose_from((0, 2 * i, 0), (0.3 * i, 0, 0)) for i in range(3)]
        ids = []
        parent = None
        for pose in poses:
            kf = builder.add_keyframe(pose, parent_id=parent)
            ids.append(kf.id)
            parent = kf.id
        with map_.transaction():
            map_.set_keyframe_pose(ids[1], pose_from((0, 2, 0), (0.32, 0.01, 0)))

        # Stale, so it is dropped when the fixture drains the queue
        arriving = KeyFrameRequest(keyframe=map_.keyframe(ids[0]), parent_id=None, epoch=map_.epoch - 1)
        residuals = mapper._optimizer._residuals
        calls = {"n": 0}

        def residuals_with_arrival(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 5:
                mapper.insert_keyframe(arriving)
            return residuals(*args, **kwargs)

        monkeypatch.setattr(mapper._optimizer, "_residuals", residuals_with_arrival)
        result = mapper.process_request(
            KeyFrameRequest(keyframe=map_.keyframe(ids[-1]), parent_id=ids[-2], epoch=map_.epoch, registered=True)
        )

        ba = result.ba_result
        assert ba is not None
        assert ba.aborted and ba.success
        assert ba.final_cost <= ba.initial_cost
        assert mapper.queue_length == 1
        map_.check_invariants()


class TestWorkerLoop:
    """Test suite for queueing, pausing and resetting."""

    def test_drain_in_arrival_order(self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene):
        """Test that queued keyframes are mapped in arrival order."""
        root = builder.add_keyframe(pose_from())
        first = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        second = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.1, 0, 0)))
        mapper.insert_keyframe(KeyFrameRequest(keyframe=first, parent_id=root.id, epoch=map_.epoch))
        mapper.insert_keyframe(KeyFrameRequest(keyframe=second, parent_id=first.id, epoch=map_.epoch))
        assert mapper.queue_length == 2
        assert not mapper.accepts_keyframes

        assert mapper.drain() == 2
        assert map_.parent(second.id) == first.id
        assert mapper.last_result.keyframe_id == second.id
        assert mapper.accepts_keyframes

    def test_failed_item_does_not_stop_worker(self, mapper: LocalMapper):
        """Test that a failing item is skipped."""
        mapper.submit(object())
        assert mapper.drain() == 1
        assert not mapper.is_busy

    def test_stop_and_release_when_idle(self, mapper: LocalMapper):
        """Test that an idle mapper pauses and resumes."""
        mapper.request_stop()
        assert mapper.stop_requested
        assert mapper.wait_until_stopped(0.1)
        mapper.release()
        assert not mapper.is_stopped

    def test_reset_discards_queue(self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene):
        """Test that a reset empties the queue."""
        root = builder.add_keyframe(pose_from())
        keyframe = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        mapper.insert_keyframe(KeyFrameRequest(keyframe=keyframe, parent_id=root.id, epoch=map_.epoch))
        assert mapper.request_reset()
        assert mapper.queue_length == 0
        assert mapper.recent_points == []

    def test_thread_processes_queue_before_exit(
        self, mapper: LocalMapper, map_: Map, builder: MapBuilder, scene
    ):
        """Test that shutdown maps the queued keyframes first."""
        root = builder.add_keyframe(pose_from())
        keyframe = tracked_keyframe(map_, builder, scene, pose_from(translation=(0.05, 0, 0)))
        mapper.start()
        assert mapper.is_running
        mapper.insert_keyframe(KeyFrameRequest(keyframe=keyframe, parent_id=root.id, epoch=map_.epoch))
        mapper.shutdown(timeout=10.0)
        assert not mapper.is_running
        assert mapper.is_finished
        assert map_.has_keyframe(keyframe.id)

    def test_running_worker_pauses(self, mapper: LocalMapper):
        """Test that a running worker pauses and resumes."""
        mapper.start()
        mapper.request_stop()
        assert mapper.wait_until_stopped(2.0)
        mapper.release()
        deadline = time.monotonic() + 2.0
        while mapper.is_stopped and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not mapper.is_stopped
