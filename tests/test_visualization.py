import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import matplotlib

matplotlib.use("Agg")

import pytest
import numpy as np
import matplotlib.pyplot as plt
from local_replanner.mapping.distance_ring_buffer import DistanceRingBuffer
from local_replanner.planning.limits import KinodynamicLimits
from local_replanner.planning.polynomial_trajectory import PolynomialTrajectoryGenerator
from local_replanner.planning.uniform_bspline import UniformBSpline3D
from local_replanner.utils.visualization import TrajectoryPlotter


@pytest.fixture
def plotter(tmp_path):
    return TrajectoryPlotter({"output_dir": str(tmp_path), "samples": 50})


@pytest.fixture
def trajectories():
    generator = PolynomialTrajectoryGenerator(KinodynamicLimits(0.3, 0.5))
    polynomial = generator.compute_trajectory([[0.0, 0.0, 1.0], [1.0, 0.5, 1.0]])
    return polynomial, UniformBSpline3D.from_polynomial(polynomial, 0.5)


class TestTrajectoryPlotter:

    def test_plot_trajectory(self, plotter, trajectories, tmp_path):

        polynomial, spline = trajectories
        path = tmp_path / "trajectory.png"

        fig = plotter.plot_trajectory(
            polynomial, spline, occupied_points=np.array([[0.5, 0.2, 1.0]]), save_path=str(path)
        )

        assert len(fig.axes) == 2
        assert path.exists()
        plt.close(fig)

    def test_plot_without_data(self, plotter, tmp_path):

        fig = plotter.plot_trajectory()

        assert len(fig.axes) == 2
        assert not (tmp_path / "trajectory.png").exists()
        plt.close(fig)

    def test_plot_distance_slice(self, plotter, tmp_path):

        buffer = DistanceRingBuffer({"pow": 4, "resolution": 0.1, "radius": 0.5})
        origin = np.array([0.05, 0.05, 0.05])
        buffer.initialize(origin)
        buffer.insert_point_cloud(np.array([[0.45, 0.05, 0.05]]), origin)
        path = tmp_path / "slice.png"

        fig = plotter.plot_distance_slice(buffer, z=0.05, save_path=str(path))

        image = fig.axes[0].get_images()[0].get_array()
        assert image.shape == (16, 16)
        assert path.exists()
        plt.close(fig)
