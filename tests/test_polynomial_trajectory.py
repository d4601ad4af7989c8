import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import numpy as np
from local_replanner.errors import InvalidConfigurationError
from local_replanner.planning.limits import KinodynamicLimits
from local_replanner.planning.polynomial_trajectory import (
    PolynomialTrajectoryGenerator,
    cost_matrix,
    derivative_row,
)


def dense_peaks(trajectory, num=4000):
    times = np.linspace(0.0, trajectory.duration, num)
    velocity = np.linalg.norm(trajectory.sample(times, 1), axis=1).max()
    acceleration = np.linalg.norm(trajectory.sample(times, 2), axis=1).max()
    return velocity, acceleration


class TestKinodynamicLimits:

    def test_from_config_defaults(self):

        limits = KinodynamicLimits.from_config({})

        assert limits.max_velocity == 0.3
        assert limits.max_acceleration == 0.5

    @pytest.mark.parametrize("velocity,acceleration", [(0.0, 0.5), (0.3, -1.0), (float("nan"), 0.5)])
    def test_invalid_limits(self, velocity, acceleration):

        with pytest.raises(InvalidConfigurationError):
            KinodynamicLimits(velocity, acceleration).validate()


class TestPolynomialHelpers:

    def test_derivative_row(self):

        np.testing.assert_allclose(derivative_row(0.0, 0, 3), [1, 0, 0, 0])
        np.testing.assert_allclose(derivative_row(1.0, 1, 3), [0, 1, 2, 3])
        np.testing.assert_allclose(derivative_row(0.5, 2, 3), [0, 0, 2, 3])

    def test_cost_matrix_is_symmetric_psd(self):

        Q = cost_matrix(4, 10)

        np.testing.assert_allclose(Q, Q.T)
        assert np.all(Q[:4, :] == 0.0)
        assert np.min(np.linalg.eigvalsh(Q)) > -1e-6 * np.max(np.abs(Q))


class TestPolynomialTrajectoryGenerator:

    @pytest.fixture
    def limits(self):

        return KinodynamicLimits(max_velocity=0.3, max_acceleration=0.5)

    @pytest.fixture
    def generator(self, limits):

        return PolynomialTrajectoryGenerator(limits)

    def test_straight_line_respects_limits(self, generator, limits):

        trajectory = generator.compute_trajectory([[0.0, 0.0, 1.0], [5.0, 0.0, 1.0]])
        v_peak, a_peak = dense_peaks(trajectory)

        assert v_peak <= limits.max_velocity * 1.01
        assert a_peak <= limits.max_acceleration * 1.01
        # Time scaling pushes at least one of the two limits
        assert max(v_peak / limits.max_velocity, a_peak / limits.max_acceleration) > 0.95
        print(f" Limits test passed: v={v_peak:.3f}, a={a_peak:.3f}, T={trajectory.duration:.1f}s")

    def test_boundary_conditions(self, generator):

        trajectory = generator.compute_trajectory([[0.0, 0.0, 1.0], [5.0, 0.0, 1.0]])

        np.testing.assert_allclose(trajectory.evaluate(0.0), [0.0, 0.0, 1.0], atol=1e-6)
        np.testing.assert_allclose(trajectory.evaluate(trajectory.duration), [5.0, 0.0, 1.0], atol=1e-6)
        for derivative in (1, 2, 3):
            np.testing.assert_allclose(trajectory.evaluate(0.0, derivative), np.zeros(3), atol=1e-6)
            np.testing.assert_allclose(
                trajectory.evaluate(trajectory.duration, derivative), np.zeros(3), atol=1e-6
            )

    def test_evaluation_clamps_outside_domain(self, generator):

        trajectory = generator.compute_trajectory([[0.0, 0.0, 0.0], [1.0, 1.0, 0.0]])

        np.testing.assert_allclose(trajectory.evaluate(-3.0), trajectory.evaluate(0.0))
        np.testing.assert_allclose(
            trajectory.evaluate(trajectory.duration + 10.0), trajectory.evaluate(trajectory.duration)
        )

    def test_multi_segment_continuity(self, generator, limits):

        waypoints = np.array([[0.0, 0.0, 1.0], [1.0, 1.0, 1.0], [2.0, 0.0, 1.5], [3.0, 0.5, 1.0]])
        trajectory = generator.compute_trajectory(waypoints)

        assert trajectory.num_segments == 3
        for i, t in enumerate(trajectory.segment_start_times):
            np.testing.assert_allclose(trajectory.evaluate(t), waypoints[i], atol=1e-6)

        eps = 1e-7
        for t in trajectory.segment_start_times[1:]:
            for derivative in (0, 1, 2):
                np.testing.assert_allclose(
                    trajectory.evaluate(t - eps, derivative),
                    trajectory.evaluate(t + eps, derivative),
                    atol=1e-4,
                )

        v_peak, a_peak = dense_peaks(trajectory)
        assert v_peak <= limits.max_velocity * 1.01
        assert a_peak <= limits.max_acceleration * 1.01

    def test_start_velocity(self, generator):

        trajectory = generator.compute_trajectory(
            [[0.0, 0.0, 1.0], [3.0, 0.0, 1.0]], start_velocity=[0.1, 0.0, 0.0]
        )

        np.testing.assert_allclose(trajectory.evaluate(0.0, 1), [0.1, 0.0, 0.0], atol=1e-6)

    def test_limit_scale(self, limits):

        generator = PolynomialTrajectoryGenerator(limits, {"limit_scale": 0.5})
        trajectory = generator.compute_trajectory([[0.0, 0.0, 1.0], [5.0, 0.0, 1.0]])
        v_peak, a_peak = dense_peaks(trajectory)

        assert v_peak <= 0.5 * limits.max_velocity * 1.01
        assert a_peak <= 0.5 * limits.max_acceleration * 1.01

    def test_trajectory_is_immutable(self, generator):

        trajectory = generator.compute_trajectory([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])

        with pytest.raises(ValueError):
            trajectory.coefficients[0, 0, 0] = 5.0
        with pytest.raises(AttributeError):
            trajectory.durations = np.array([1.0])

    def test_coincident_start_and_goal(self, generator):

        trajectory = generator.compute_trajectory([[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]])

        assert trajectory.duration == pytest.approx(generator.min_segment_duration)
        np.testing.assert_allclose(trajectory.evaluate(0.3), [1.0, 2.0, 3.0])
        np.testing.assert_allclose(trajectory.evaluate(0.3, 1), np.zeros(3))

    def test_duplicate_waypoints_collapsed(self, generator):

        trajectory = generator.compute_trajectory(
            [[0.0, 0.0, 0.0], [0.0, 0.0, 0.0], [1.0, 0.0, 0.0]]
        )

        assert trajectory.num_segments == 1

    def test_too_few_waypoints(self, generator):

        with pytest.raises(InvalidConfigurationError):
            generator.compute_trajectory([[0.0, 0.0, 0.0]])

    def test_non_finite_waypoints(self, generator):

        with pytest.raises(InvalidConfigurationError):
            generator.compute_trajectory([[0.0, 0.0, 0.0], [np.nan, 0.0, 0.0]])

    def test_malformed_waypoints(self, generator):

        with pytest.raises(InvalidConfigurationError):
            generator.compute_trajectory([[0.0, 0.0], [1.0, 0.0]])

    def test_non_positive_limits(self):

        with pytest.raises(InvalidConfigurationError):
            PolynomialTrajectoryGenerator(KinodynamicLimits(max_velocity=0.0, max_acceleration=0.5))
