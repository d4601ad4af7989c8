import logging
import time
import threading
from typing import Callable, Dict, List, Optional, Any

from local_replanner.integration.replan_manager import ReplanManager, Setpoint


class SetpointEmitter:
    """
    Fixed-rate setpoint stream.

    A daemon thread ticks the replan manager at `control_rate_hz` and hands
    every setpoint to the registered callbacks. Optionally runs an
    optimization cycle every `optimize_every_n_ticks` ticks.
    """

    def __init__(self, manager: ReplanManager, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.manager = manager
        self.control_rate_hz = float(config.get("control_rate_hz", 20.0))
        self.optimize_every_n_ticks = int(config.get("optimize_every_n_ticks", 0))

        if self.control_rate_hz <= 0:
            raise ValueError(f"control_rate_hz must be positive, got {self.control_rate_hz}")

        self.period = 1.0 / self.control_rate_hz

        self.callbacks: List[Callable[[Setpoint], None]] = []
        self.is_running = False
        self.emitter_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.tick_count = 0
        self.emitted_count = 0
        self.callback_errors = 0
        self.latest_setpoint: Optional[Setpoint] = None

        self.logger.info(f"Setpoint Emitter initialized at {self.control_rate_hz}Hz")

    def register_callback(self, callback: Callable[[Setpoint], None]):

        self.callbacks.append(callback)

    def emit_once(self, now: Optional[float] = None) -> Optional[Setpoint]:
        """Run one control tick and deliver the setpoint, if any."""
        self.tick_count += 1

        if self.optimize_every_n_ticks > 0 and self.tick_count % self.optimize_every_n_ticks == 0:
            self.manager.optimize(now)

        setpoint = self.manager.tick(now)
        if setpoint is None:
            return None

        self.latest_setpoint = setpoint
        self.emitted_count += 1

        for callback in self.callbacks:
            try:
                callback(setpoint)
            except Exception as e:
                self.callback_errors += 1
                self.logger.error(f"Setpoint callback error: {e}")

        return setpoint

    def start(self):

        if self.is_running:
            return

        self.is_running = True
        self._stop_event.clear()
        self.emitter_thread = threading.Thread(target=self._emit_loop)
        self.emitter_thread.daemon = True
        self.emitter_thread.start()

        self.logger.info("Setpoint emission started")

    def stop(self):

        self.is_running = False
        self._stop_event.set()

        if self.emitter_thread and self.emitter_thread.is_alive():
            self.emitter_thread.join(timeout=2.0)

        self.logger.info("Setpoint emission stopped")

    def _emit_loop(self):

        self.logger.info("Setpoint emission loop started")

        while self.is_running:
            loop_start = time.time()
            try:
                self.emit_once()
            except Exception as e:
                self.logger.error(f"Setpoint emission error: {e}")

            elapsed = time.time() - loop_start
            self._stop_event.wait(max(0.0, self.period - elapsed))

        self.logger.info("Setpoint emission loop stopped")

    def get_statistics(self) -> Dict[str, Any]:

        return {
            "is_running": self.is_running,
            "tick_count": self.tick_count,
            "emitted_count": self.emitted_count,
            "callback_errors": self.callback_errors,
            "control_rate_hz": self.control_rate_hz,
        }
