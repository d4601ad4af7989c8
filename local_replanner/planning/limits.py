import math
from dataclasses import dataclass
from typing import Dict, Any

from local_replanner.errors import InvalidConfigurationError


@dataclass(frozen=True)
class KinodynamicLimits:
    """Velocity and acceleration norm bounds shared by trajectory generation and optimization."""

    max_velocity: float
    max_acceleration: float

    def validate(self) -> "KinodynamicLimits":
        for name in ("max_velocity", "max_acceleration"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise InvalidConfigurationError(f"{name} must be positive, got {value!r}")
        return self

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "KinodynamicLimits":
        return cls(
            max_velocity=config.get("max_velocity", 0.3),
            max_acceleration=config.get("max_acceleration", 0.5),
        )
