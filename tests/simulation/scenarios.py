"""
Short-duration failure scenarios for FailureSimulator tests.

Each scenario mirrors a predefined one with timings scaled down so a test
can watch it run to completion:
    keys = failures.execute_scenario(SCENARIOS["brief_outage"])
"""

from typing import Dict

from fleet_simulator.services.failure_simulator import (
    FailureScenario,
    FailureSeverity,
    FailureType,
)

# ---------------------------------------------------------------------------
# Power
# ---------------------------------------------------------------------------

INSTANT_LOW_BATTERY = FailureScenario(
    id="instant_low_battery",
    name="Instant Low Battery",
    failure_type=FailureType.BATTERY_DRAIN,
    parameters={"target_level": 10, "instant": True},
)

# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------

BRIEF_SIGNAL_LOSS = FailureScenario(
    id="brief_signal_loss",
    name="Brief Signal Loss",
    failure_type=FailureType.SIGNAL_LOSS,
    severity=FailureSeverity.HIGH,
    duration=0.05,
)

BRIEF_OUTAGE = FailureScenario(
    id="brief_outage",
    name="Brief Outage",
    failure_type=FailureType.DEVICE_OFFLINE,
    duration=0.05,
    target_devices=["all"],
)

FLAPPING_CONNECTION = FailureScenario(
    id="flapping_connection",
    name="Flapping Connection",
    failure_type=FailureType.INTERMITTENT_CONNECTION,
    duration=0.2,
    parameters={"interval": 0.03, "offline_duration": 0.01},
)

# ---------------------------------------------------------------------------
# Type-specific
# ---------------------------------------------------------------------------

SHORT_STUCK_BUTTON = FailureScenario(
    id="short_stuck_button",
    name="Short Stuck Button",
    failure_type=FailureType.BUTTON_MALFUNCTION,
    duration=0.05,
    parameters={"type": "stuck"},
)

SHORT_CONGESTION = FailureScenario(
    id="short_congestion",
    name="Short Congestion",
    failure_type=FailureType.NETWORK_CONGESTION,
    duration=0.2,
    parameters={"message_count": 10},
)

# ---------------------------------------------------------------------------
# Firmware
# ---------------------------------------------------------------------------

QUICK_CRASH = FailureScenario(
    id="quick_crash",
    name="Quick Crash",
    failure_type=FailureType.FIRMWARE_CRASH,
    severity=FailureSeverity.HIGH,
    parameters={"reboot_time": 0.05},
)

SLOW_LEAK = FailureScenario(
    id="slow_leak",
    name="Slow Leak",
    failure_type=FailureType.MEMORY_LEAK,
    parameters={"leak_rate": 1},
)


SCENARIOS: Dict[str, FailureScenario] = {
    s.id: s
    for s in [
        INSTANT_LOW_BATTERY,
        BRIEF_SIGNAL_LOSS,
        BRIEF_OUTAGE,
        FLAPPING_CONNECTION,
        SHORT_STUCK_BUTTON,
        SHORT_CONGESTION,
        QUICK_CRASH,
        SLOW_LEAK,
    ]
}
