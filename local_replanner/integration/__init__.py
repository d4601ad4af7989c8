from local_replanner.integration.replan_manager import ReplanManager, Setpoint
from local_replanner.integration.setpoint_emitter import SetpointEmitter

__all__ = ["ReplanManager", "Setpoint", "SetpointEmitter"]
