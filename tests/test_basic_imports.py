"""
Basic import tests for the local replanner.
These tests check that all modules can be imported without errors.
"""

import unittest
import sys
import os

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))


class TestBasicImports(unittest.TestCase):
    """Test that all main modules can be imported without errors."""

    def test_package_import(self):
        """Test importing the main package."""
        try:
            import local_replanner

            self.assertEqual(local_replanner.__version__, "1.0.0")
        except ImportError as e:
            self.fail(f"Failed to import local_replanner: {e}")

    def test_component_imports(self):
        modules_to_test = [
            "local_replanner.errors",
            "local_replanner.perception",
            "local_replanner.perception.coordinate_transforms",
            "local_replanner.perception.depth_projector",
            "local_replanner.mapping",
            "local_replanner.mapping.distance_ring_buffer",
            "local_replanner.planning",
            "local_replanner.planning.limits",
            "local_replanner.planning.polynomial_trajectory",
            "local_replanner.planning.uniform_bspline",
            "local_replanner.planning.bspline_optimizer",
            "local_replanner.integration",
            "local_replanner.integration.replan_manager",
            "local_replanner.integration.setpoint_emitter",
        ]

        for module_name in modules_to_test:
            with self.subTest(module=module_name):
                try:
                    __import__(module_name)
                except ImportError as e:
                    self.fail(f"Failed to import {module_name}: {e}")

    def test_utils_imports(self):
        """Test importing utility modules."""
        modules_to_test = [
            "local_replanner.utils",
            "local_replanner.utils.config_loader",
            "local_replanner.utils.logger",
            "local_replanner.utils.visualization",
        ]

        for module_name in modules_to_test:
            with self.subTest(module=module_name):
                try:
                    __import__(module_name)
                except ImportError as e:
                    self.fail(f"Failed to import {module_name}: {e}")

    def test_public_exports(self):

        from local_replanner.integration import ReplanManager, Setpoint, SetpointEmitter
        from local_replanner.planning import BSplineOptimizer, UniformBSpline3D

        self.assertTrue(callable(ReplanManager.tick))
        self.assertTrue(callable(SetpointEmitter.emit_once))
        self.assertTrue(callable(BSplineOptimizer.optimize))
        self.assertTrue(callable(UniformBSpline3D.from_polynomial))
        self.assertIn("trajectory_time", Setpoint.__dataclass_fields__)


if __name__ == "__main__":
    unittest.main()
