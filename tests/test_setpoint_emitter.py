import sys
import os
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
import numpy as np
from local_replanner.integration.replan_manager import ReplanManager
from local_replanner.integration.setpoint_emitter import SetpointEmitter


@pytest.fixture
def manager():
    manager = ReplanManager()
    manager.update_vehicle_pose([0.0, 0.0, 1.0])
    return manager


class TestSetpointEmitter:

    def test_invalid_rate(self, manager):

        with pytest.raises(ValueError):
            SetpointEmitter(manager, {"control_rate_hz": 0.0})

    def test_nothing_emitted_without_trajectory(self, manager):

        emitter = SetpointEmitter(manager)
        received = []
        emitter.register_callback(received.append)

        assert emitter.emit_once(now=0.0) is None
        assert received == []
        assert emitter.tick_count == 1
        assert emitter.emitted_count == 0

    def test_callbacks_receive_setpoints(self, manager):

        manager.set_goal([1.0, 0.0, 1.0], now=0.0)
        emitter = SetpointEmitter(manager)
        received = []
        emitter.register_callback(received.append)

        setpoint = emitter.emit_once(now=1.0)

        assert received == [setpoint]
        assert emitter.latest_setpoint is setpoint
        np.testing.assert_allclose(setpoint.position, manager.get_spline().evaluate(1.05))

    def test_failing_callback_is_isolated(self, manager):

        manager.set_goal([1.0, 0.0, 1.0], now=0.0)
        emitter = SetpointEmitter(manager)
        received = []

        def broken(setpoint):
            raise RuntimeError("controller offline")

        emitter.register_callback(broken)
        emitter.register_callback(received.append)

        emitter.emit_once(now=1.0)

        assert emitter.callback_errors == 1
        assert len(received) == 1

    def test_optimizes_every_n_ticks(self, manager):

        manager.set_goal([1.0, 0.0, 1.0], now=0.0)
        emitter = SetpointEmitter(manager, {"optimize_every_n_ticks": 3})

        for i in range(7):
            emitter.emit_once(now=0.1 * i)

        assert manager.statistics["optimizations"] == 2
        assert manager.statistics["setpoints"] == 7

    def test_background_thread(self, manager):

        manager.set_goal([1.0, 0.0, 1.0])
        emitter = SetpointEmitter(manager, {"control_rate_hz": 100.0})
        received = []
        emitter.register_callback(received.append)

        emitter.start()
        assert emitter.is_running
        time.sleep(0.3)
        emitter.stop()

        assert not emitter.is_running
        assert not emitter.emitter_thread.is_alive()
        assert len(received) > 5

        stats = emitter.get_statistics()
        assert stats["emitted_count"] == len(received)
        assert stats["control_rate_hz"] == 100.0
