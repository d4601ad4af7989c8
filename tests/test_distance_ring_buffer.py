import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import numpy as np
from local_replanner.mapping.distance_ring_buffer import DistanceRingBuffer


def voxel_center(buffer, index):
    return buffer.index_to_world(np.asarray(index))


class TestRingBufferIndexing:

    @pytest.fixture
    def buffer(self):

        buffer = DistanceRingBuffer({"pow": 4, "resolution": 0.1, "radius": 0.5})
        buffer.initialize(np.array([0.05, 0.05, 0.05]))
        return buffer

    def test_initialization(self, buffer):

        assert buffer.size == 16
        np.testing.assert_array_equal(buffer.center, [0, 0, 0])
        np.testing.assert_array_equal(buffer.offset, [-8, -8, -8])
        assert buffer.occupied.shape == (16, 16, 16)

    def test_world_to_index_is_floor(self, buffer):

        points = np.array([[0.05, -0.05, 0.0], [0.19, 0.25, -0.21]])

        np.testing.assert_array_equal(buffer.world_to_index(points), [[0, -1, 0], [1, 2, -3]])
        np.testing.assert_array_equal(buffer.wrapped_index(np.array([-1, 16, 17])), [15, 0, 1])

    def test_in_volume(self, buffer):

        assert buffer.in_volume(np.array([-8, -8, -8]))
        assert buffer.in_volume(np.array([7, 7, 7]))
        assert not buffer.in_volume(np.array([8, 0, 0]))
        assert not buffer.in_volume(np.array([0, -9, 0]))

    def test_center_tracks_sum_of_shifts(self, buffer):

        rng = np.random.default_rng(3)
        start = buffer.center.copy()
        total = np.zeros(3, dtype=np.int64)

        for _ in range(25):
            delta = rng.integers(-3, 4, size=3)
            steps = buffer.shift(delta)
            total += delta
            assert steps == np.max(np.abs(delta))

        np.testing.assert_array_equal(buffer.center, start + total)
        print(f" Shift test passed: center moved by {total}")

    def test_recenter(self, buffer):

        steps = buffer.recenter(np.array([0.35, -0.25, 0.05]))

        assert steps == 3
        np.testing.assert_array_equal(buffer.center, [3, -3, 0])


class TestRingBufferInsertion:

    @pytest.fixture
    def buffer(self):

        buffer = DistanceRingBuffer(
            {"pow": 4, "resolution": 0.1, "radius": 0.5, "carve_free_space": False}
        )
        buffer.initialize(np.array([0.05, 0.05, 0.05]))
        return buffer

    def test_insert_marks_occupied(self, buffer):

        point = voxel_center(buffer, [3, 0, 0])
        result = buffer.insert_point_cloud(point[None, :], np.array([0.05, 0.05, 0.05]))

        assert result.num_points == 1
        assert result.num_inserted == 1
        assert result.num_outside == 0
        assert buffer.is_occupied(point)
        assert buffer.num_occupied() == 1
        np.testing.assert_allclose(buffer.occupied_points(), point[None, :])

    def test_points_outside_volume_are_counted(self, buffer):

        points = np.array([[0.15, 0.05, 0.05], [5.0, 0.0, 0.0]])

        result = buffer.insert_point_cloud(points, np.zeros(3))

        assert result.num_inserted == 1
        assert result.num_outside == 1

    def test_shift_evicts_leaving_plane(self, buffer):

        leaving = voxel_center(buffer, [-8, 0, 0])
        staying = voxel_center(buffer, [5, 0, 0])
        buffer.insert_point_cloud(np.vstack([leaving, staying]), np.zeros(3))
        assert buffer.num_occupied() == 2

        buffer.shift(np.array([1, 0, 0]))

        assert not buffer.is_occupied(leaving)
        assert buffer.is_occupied(staying)
        assert buffer.num_occupied() == 1

        # The storage plane now represents world index 8 and must be empty
        plane = buffer.wrapped_index(8)
        assert not buffer.occupied[plane].any()
        assert not buffer.observed[plane].any()
        assert not buffer.generation[plane].any()

        # Shifting back does not resurrect the evicted voxel
        buffer.shift(np.array([-1, 0, 0]))
        assert not buffer.is_occupied(leaving)
        distance, valid = buffer.query_distance(voxel_center(buffer, [-8, 5, 5]))
        assert not valid

    def test_negative_shift_evicts_high_plane(self, buffer):

        high = voxel_center(buffer, [7, 2, 2])
        buffer.insert_point_cloud(high[None, :], np.zeros(3))

        buffer.shift(np.array([-1, 0, 0]))

        assert buffer.num_occupied() == 0
        np.testing.assert_array_equal(buffer.offset, [-9, -8, -8])

    def test_distance_field(self, buffer):

        obstacle = voxel_center(buffer, [3, 0, 0])
        buffer.insert_point_cloud(obstacle[None, :], np.zeros(3))

        distance, valid = buffer.query_distance(voxel_center(buffer, [0, 0, 0]))
        assert valid
        assert distance == pytest.approx(0.3, abs=1e-6)

        distance, valid = buffer.query_distance(obstacle)
        assert valid
        assert distance == pytest.approx(0.0)

    def test_distance_truncated_at_radius(self):

        buffer = DistanceRingBuffer({"pow": 4, "resolution": 0.1, "radius": 0.5})
        origin = voxel_center(buffer, [0, 0, 0])
        buffer.initialize(origin)

        # Carving marks the ray free and observed; the far end is well beyond the radius
        far = voxel_center(buffer, [7, 0, 0])
        buffer.insert_point_cloud(far[None, :], origin)

        distance, valid = buffer.query_distance(origin)
        assert valid
        assert distance == pytest.approx(0.5)

    def test_gradient_points_away_from_obstacle(self, buffer):

        obstacle = voxel_center(buffer, [3, 0, 0])
        buffer.insert_point_cloud(obstacle[None, :], np.zeros(3))

        distance, gradient, valid = buffer.query_distance_with_gradient(np.array([0.1, 0.05, 0.05]))

        assert valid
        assert 0.2 < distance < 0.3
        # Distance drops by one voxel per voxel towards the obstacle
        assert gradient[0] == pytest.approx(-1.0)

    def test_out_of_volume_queries_are_unknown(self, buffer):

        distance, valid = buffer.query_distance(np.array([10.0, 0.0, 0.0]))
        assert not valid
        assert np.isnan(distance)

        distance, gradient, valid = buffer.query_distance_with_gradient(np.array([10.0, 0.0, 0.0]))
        assert not valid
        np.testing.assert_array_equal(gradient, np.zeros(3))

    def test_unobserved_space_is_unknown(self, buffer):

        distance, valid = buffer.query_distance(np.array([0.05, 0.05, 0.05]))

        assert not valid

    def test_get_info(self, buffer):

        info = buffer.get_info()

        assert info.size == 16
        assert info.center == (0, 0, 0)
        assert info.world_bounds[0] == pytest.approx((-0.8, 0.8))
        assert info.occupied_cells == 0

    def test_reset(self, buffer):

        buffer.insert_point_cloud(voxel_center(buffer, [1, 1, 1])[None, :], np.zeros(3))

        buffer.reset()

        assert not buffer.initialized
        assert buffer.num_occupied() == 0
        assert buffer.generation_counter == 0


class TestFreeSpaceCarving:

    @pytest.fixture
    def buffer(self):

        buffer = DistanceRingBuffer({"pow": 5, "resolution": 0.1, "radius": 0.5})
        buffer.initialize(np.array([0.05, 0.05, 0.05]))
        return buffer

    def test_insertion_is_idempotent(self, buffer):

        rng = np.random.default_rng(7)
        origin = np.array([0.05, 0.05, 0.05])
        points = origin + rng.uniform(-1.2, 1.2, size=(200, 3))

        buffer.insert_point_cloud(points, origin)
        once = buffer.export_state()

        buffer.insert_point_cloud(points, origin)
        twice = buffer.export_state()

        np.testing.assert_array_equal(once["occupied"], twice["occupied"])
        np.testing.assert_array_equal(once["observed"], twice["observed"])
        np.testing.assert_array_equal(once["distance"], twice["distance"])
        print(" Idempotent insertion test passed")

    def test_carving_clears_stale_obstacle(self, buffer):

        origin = voxel_center(buffer, [0, 0, 0])
        stale = voxel_center(buffer, [5, 0, 0])
        wall = voxel_center(buffer, [10, 0, 0])

        buffer.insert_point_cloud(stale[None, :], origin)
        assert buffer.is_occupied(stale)

        buffer.insert_point_cloud(wall[None, :], origin)

        assert not buffer.is_occupied(stale)
        assert buffer.is_occupied(wall)
        distance, valid = buffer.query_distance(stale)
        assert valid
        assert distance == pytest.approx(0.5)
