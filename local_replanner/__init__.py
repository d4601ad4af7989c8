"""
local-replanner: Depth-Camera Local Trajectory Replanning
Main package initialization.

Use direct imports from submodules, e.g.:
    from local_replanner.integration.replan_manager import ReplanManager
    from local_replanner.mapping.distance_ring_buffer import DistanceRingBuffer
"""

import logging
import sys

# Package version
__version__ = "1.0.0"
__description__ = "Online B-spline local replanner over a vehicle-centred distance field"

# Setup basic logging
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

logger = logging.getLogger(__name__)
logger.debug(f"local-replanner v{__version__} package loaded")

__all__ = ["__version__", "__description__"]
