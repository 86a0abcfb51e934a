"""
Call button simulator
"""

import logging
import random
from typing import Optional

from ..exceptions import CommandError
from ..models.device import ButtonTuning
from ..models.events import (
    EmergencyPayload,
    EventPriority,
    FailurePayload,
    PressPayload,
    PressType,
    VoiceReadyPayload,
)
from .base import BaseDeviceSimulator, require_number

logger = logging.getLogger(__name__)

PRESS_TYPE_WEIGHTS = {
    PressType.SINGLE: 0.70,
    PressType.DOUBLE: 0.15,
    PressType.LONG: 0.12,
    PressType.EMERGENCY: 0.03,
}

PRIORITY_WEIGHTS = {
    EventPriority.NORMAL: 0.60,
    EventPriority.LOW: 0.20,
    EventPriority.HIGH: 0.15,
    EventPriority.CRITICAL: 0.05,
}

BATTERY_PER_PRESS = 0.5
RAPID_PRESS_SPACING = 0.1
VOICE_WINDOW = 30.0


def weighted_choice(weights: dict):
    """Pick a key of ``weights`` proportionally to its value"""
    return random.choices(list(weights), weights=list(weights.values()), k=1)[0]


class ButtonSimulator(BaseDeviceSimulator):
    """Guest call button with autonomous presses and voice mode"""

    device_type = "button"

    COMMANDS = {
        "press": "press",
        "trigger_press": "trigger_press",
        "emergency": "emergency",
        "emergency_press": "emergency",
        "enable_voice": "enable_voice",
        "disable_voice": "disable_voice",
        "rapid_press": "rapid_press",
        "malfunction": "malfunction",
    }

    def __init__(self, config, transport, topics=None, event_log_size: int = 100):
        super().__init__(config, transport, topics, event_log_size)
        self.tuning: ButtonTuning = config.tuning
        self.voice_enabled = self.tuning.voice_enabled
        self.press_count = 0
        self.unresponsive = False
        self.last_press_type: Optional[PressType] = None

    def schedule_behaviors(self):
        if self.tuning.auto_press:
            self._schedule_next_press()
        if self.voice_enabled:
            self._schedule_voice_ready()

    def extra_status(self):
        return {
            "press_count": self.press_count,
            "voice_enabled": self.voice_enabled,
            "unresponsive": self.unresponsive,
            "last_press_type": self.last_press_type.value if self.last_press_type else None,
        }

    # ------------------------------------------------------------------
    # Autonomous presses
    # ------------------------------------------------------------------

    def _schedule_next_press(self):
        delay = random.uniform(self.tuning.press_interval_min, self.tuning.press_interval_max)
        self.scheduler.call_later("press", delay, self._autonomous_press)
        logger.debug(f"{self.device_id} next press in {delay:.1f}s")

    async def _autonomous_press(self):
        try:
            if self.status.online:
                await self.press(
                    press_type=weighted_choice(PRESS_TYPE_WEIGHTS),
                    priority=weighted_choice(PRIORITY_WEIGHTS),
                )
        finally:
            if self._accepting_events:
                self._schedule_next_press()

    def press_duration(self, press_type: PressType) -> float:
        """Hold time in seconds for a press type"""
        if press_type == PressType.SINGLE:
            return round(random.uniform(0.1, 0.6), 3)
        if press_type == PressType.DOUBLE:
            return round(random.uniform(0.05, 0.25), 3)
        if press_type == PressType.LONG:
            return round(self.tuning.long_press_threshold + random.uniform(0, 2.0), 3)
        return round(random.uniform(2.0, 3.0), 3)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def press(
        self,
        press_type: PressType = PressType.SINGLE,
        priority: EventPriority = EventPriority.NORMAL,
        voice_message: Optional[str] = None,
    ):
        """Publish a press on ``press`` and ``event/press`` (plus ``emergency``)"""
        try:
            press_type = PressType(press_type)
            priority = EventPriority(priority)
        except ValueError as e:
            raise CommandError(str(e))

        if self.unresponsive:
            logger.info(f"{self.device_id} press ignored: button unresponsive")
            return None

        if press_type == PressType.EMERGENCY:
            priority = EventPriority.CRITICAL

        self.press_count += 1
        self.last_press_type = press_type
        self.status.battery = self.status.battery - BATTERY_PER_PRESS

        event = await self.emit(
            PressPayload(
                press_type=press_type,
                duration=self.press_duration(press_type),
                sequence=self.press_count,
                voice_message=voice_message,
            ),
            priority=priority,
            actions=("press", "event/press"),
        )
        if press_type == PressType.EMERGENCY:
            await self.emit(
                EmergencyPayload(message=voice_message),
                priority=EventPriority.CRITICAL,
                actions=("emergency",),
            )
        logger.debug(f"{self.device_id} {press_type.value} press ({priority.value})")
        return event

    async def trigger_press(
        self,
        press_type: PressType = PressType.SINGLE,
        priority: EventPriority = EventPriority.NORMAL,
        voice_message: Optional[str] = None,
    ):
        """Fire a press immediately, outside the autonomous schedule"""
        return await self.press(press_type, priority, voice_message)

    async def emergency(self, message: Optional[str] = None):
        return await self.press(PressType.EMERGENCY, EventPriority.CRITICAL, message)

    def enable_voice(self):
        if self.voice_enabled:
            return
        self.voice_enabled = True
        self._schedule_voice_ready()
        logger.info(f"{self.device_id} voice mode enabled")

    def disable_voice(self):
        self.voice_enabled = False
        self.scheduler.cancel("voice")
        logger.info(f"{self.device_id} voice mode disabled")

    def _schedule_voice_ready(self):
        delay = random.uniform(self.tuning.voice_interval_min, self.tuning.voice_interval_max)
        self.scheduler.call_later("voice", delay, self._voice_ready)

    async def _voice_ready(self):
        if not self.voice_enabled:
            return
        await self.emit(
            VoiceReadyPayload(duration=VOICE_WINDOW, quality=random.randint(1, 100)),
            actions=("event/voice_ready",),
        )
        if self.voice_enabled and self._accepting_events:
            self._schedule_voice_ready()

    def rapid_press(self, count: int = 5, spacing: float = RAPID_PRESS_SPACING):
        """Burst of ``count`` single presses, ``spacing`` seconds apart"""
        if int(count) < 1:
            raise CommandError("count must be at least 1")
        spacing = require_number("spacing", spacing, allow_zero=False)
        remaining = int(count)

        async def step():
            nonlocal remaining
            await self.press(PressType.SINGLE, EventPriority.NORMAL)
            remaining -= 1
            if remaining <= 0:
                self.scheduler.cancel("rapid_press")

        self.scheduler.call_every("rapid_press", spacing, step, initial_delay=0)

    async def malfunction(self, malfunction_type: str = "stuck", duration: Optional[float] = None):
        """Stuck: presses every 100 ms; unresponsive: presses ignored"""
        duration = require_number("duration", duration)
        if malfunction_type not in ("stuck", "unresponsive"):
            raise CommandError(f"Unknown malfunction type '{malfunction_type}'")
        if malfunction_type == "stuck":
            duration = duration or 5.0
            self.scheduler.call_every(
                "malfunction",
                RAPID_PRESS_SPACING,
                lambda: self.press(PressType.SINGLE, EventPriority.NORMAL),
                initial_delay=0,
            )
        else:
            duration = duration or 30.0
            self.unresponsive = True

        await self.emit(
            FailurePayload(
                failure_type="button_malfunction",
                phase="start",
                detail={"type": malfunction_type, "duration": duration},
            ),
            priority=EventPriority.HIGH,
        )
        self.scheduler.call_later("malfunction_end", duration, self._end_malfunction)
        logger.info(f"{self.device_id} malfunction '{malfunction_type}' for {duration}s")

    async def _end_malfunction(self):
        self.scheduler.cancel("malfunction")
        self.unresponsive = False
        await self.emit(FailurePayload(failure_type="button_malfunction", phase="recovered"))
