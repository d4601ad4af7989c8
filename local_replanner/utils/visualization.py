import numpy as np
import matplotlib.pyplot as plt
import logging
from typing import Dict, Optional, Any
from pathlib import Path


class TrajectoryPlotter:

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.figure_size = config.get("figure_size", (14, 6))
        self.dpi = config.get("dpi", 100)
        self.save_plots = config.get("save_plots", False)
        self.output_dir = Path(config.get("output_dir", "plots"))
        self.samples = int(config.get("samples", 200))

        self.trajectory_colors = ["#1f77b4", "#ff7f0e", "#2ca02c", "#d62728"]

        self.logger.info("Trajectory Plotter initialized")

    def _save(self, fig: plt.Figure, save_path: Optional[str]):
        if save_path is None and not self.save_plots:
            return

        path = Path(save_path) if save_path else self.output_dir / "trajectory.png"
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, bbox_inches="tight")
        self.logger.info(f"Plot saved to {path}")

    def plot_trajectory(
        self,
        polynomial=None,
        spline=None,
        occupied_points: Optional[np.ndarray] = None,
        save_path: Optional[str] = None,
    ) -> plt.Figure:
        """Position against time plus a 3D view of the polynomial and optimized spline."""
        fig = plt.figure(figsize=self.figure_size, dpi=self.dpi)
        ax_time = fig.add_subplot(1, 2, 1)
        ax_3d = fig.add_subplot(1, 2, 2, projection="3d")

        if polynomial is not None:
            times = np.linspace(0.0, polynomial.duration, self.samples)
            positions = polynomial.sample(times)
            for axis, label in enumerate("xyz"):
                ax_time.plot(
                    times, positions[:, axis], "--",
                    color=self.trajectory_colors[axis], alpha=0.6, label=f"{label} polynomial",
                )
            ax_3d.plot(
                positions[:, 0], positions[:, 1], positions[:, 2],
                "--", color="gray", label="Polynomial",
            )

        if spline is not None:
            times = np.linspace(spline.t0, spline.end_time, self.samples)
            positions = spline.sample(times)
            for axis, label in enumerate("xyz"):
                ax_time.plot(
                    times - spline.t0, positions[:, axis],
                    color=self.trajectory_colors[axis], label=f"{label} spline",
                )
            ax_3d.plot(
                positions[:, 0], positions[:, 1], positions[:, 2],
                color=self.trajectory_colors[3], linewidth=2, label="B-spline",
            )
            control = spline.control_points
            ax_3d.scatter(control[:, 0], control[:, 1], control[:, 2], s=10, color="black", alpha=0.5)

        if occupied_points is not None and len(occupied_points):
            ax_3d.scatter(
                occupied_points[:, 0], occupied_points[:, 1], occupied_points[:, 2],
                s=4, color="orange", alpha=0.4, label="Occupied",
            )

        ax_time.set_xlabel("Time (s)")
        ax_time.set_ylabel("Position (m)")
        ax_time.set_title("Position")
        ax_time.grid(True, alpha=0.3)
        if ax_time.get_legend_handles_labels()[0]:
            ax_time.legend(fontsize="small")

        ax_3d.set_xlabel("X (m)")
        ax_3d.set_ylabel("Y (m)")
        ax_3d.set_zlabel("Z (m)")
        ax_3d.set_title("3D Trajectory")
        if ax_3d.get_legend_handles_labels()[0]:
            ax_3d.legend(fontsize="small")

        plt.tight_layout()
        self._save(fig, save_path)

        return fig

    def plot_distance_slice(
        self, buffer, z: float, save_path: Optional[str] = None
    ) -> plt.Figure:
        """Horizontal slice of the distance field at height z; unobserved cells are blank."""
        info = buffer.get_info()
        (x_lo, x_hi), (y_lo, y_hi), _ = info.world_bounds

        half = buffer.resolution / 2.0
        xs = np.arange(x_lo + half, x_hi, buffer.resolution)
        ys = np.arange(y_lo + half, y_hi, buffer.resolution)
        grid_x, grid_y = np.meshgrid(xs, ys)

        image = np.full(grid_x.shape, np.nan)
        for row in range(grid_x.shape[0]):
            for col in range(grid_x.shape[1]):
                distance, valid = buffer.query_distance(np.array([grid_x[row, col], grid_y[row, col], z]))
                if valid:
                    image[row, col] = distance

        fig, ax = plt.subplots(figsize=(8, 7), dpi=self.dpi)
        mesh = ax.imshow(
            image, origin="lower", extent=(x_lo, x_hi, y_lo, y_hi),
            cmap="viridis", vmin=0.0, vmax=buffer.radius,
        )
        fig.colorbar(mesh, ax=ax, label="Distance (m)")

        ax.set_xlabel("X (m)")
        ax.set_ylabel("Y (m)")
        ax.set_title(f"Distance field at z = {z:.2f} m")

        self._save(fig, save_path)

        return fig
