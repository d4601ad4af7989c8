"""
Replanner Errors
Exception types shared by the perception, mapping and planning layers.
"""


class ReplannerError(Exception):
    """Base class for all replanner errors."""


class InvalidConfigurationError(ReplannerError, ValueError):
    """Raised for unusable parameters: fewer than two waypoints, non-positive limits, bad config values."""


class TransformLookupError(ReplannerError):
    """Camera pose at the depth frame timestamp is not available."""


class FrozenControlPointError(ReplannerError):
    """Attempted write to a control point that has left the optimization window."""
