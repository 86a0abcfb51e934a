"""
Crew smartwatch simulator

Tracks crew assignment, service-request workflow, location and health.
"""

import logging
import math
import random
import time
from datetime import datetime
from typing import Dict, Optional

from ..exceptions import CommandError
from ..models.device import CrewAssignment, CrewStatus, Location, WatchTuning
from ..models.events import (
    AssignmentPayload,
    BatteryPayload,
    EventPriority,
    FallPayload,
    HealthPayload,
    LocationPayload,
    RequestAction,
    RequestPayload,
    SosPayload,
)
from .base import BaseDeviceSimulator, require_number

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371e3
STRIDE_M = 0.7
SOS_BATTERY_COST = 5.0
CHARGE_PER_TICK = 2.0
MOVEMENT_STEP = 5.0
PATROL_DELTA = 0.0001
MOVEMENT_PATTERNS = ("patrol", "random", "stationary")

# Port Hercule, Monaco
DEFAULT_LOCATION = Location(latitude=43.7347, longitude=7.4206, deck="main", zone="aft")


def haversine_distance(a: Location, b: Location) -> float:
    """Great-circle distance in meters"""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def initial_bearing(a: Location, b: Location) -> float:
    """Heading from a to b in degrees, 0..360"""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)
    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


class WatchSimulator(BaseDeviceSimulator):
    """Smartwatch worn by a crew member"""

    device_type = "watch"

    COMMANDS = {
        "assign_crew": "assign_crew",
        "set_crew_status": "set_crew_status",
        "receive_request": "receive_service_request",
        "accept_request": "accept_request",
        "decline_request": "decline_request",
        "complete_request": "complete_request",
        "update_location": "update_location",
        "simulate_movement": "simulate_movement",
        "sos": "send_sos",
        "send_sos": "send_sos",
        "fall": "simulate_fall",
        "simulate_fall": "simulate_fall",
        "start_charging": "start_charging",
        "stop_charging": "stop_charging",
    }

    def __init__(self, config, transport, topics=None, event_log_size: int = 100):
        super().__init__(config, transport, topics, event_log_size)
        self.tuning: WatchTuning = config.tuning
        self.active_requests: Dict[str, Dict] = {}
        self.charging = False
        self.heart_rate = random.randint(self.tuning.heart_rate_min, self.tuning.heart_rate_max)
        self.steps = 0
        self.distance = 0.0
        self.calories = float(random.randint(0, 1500))
        self.stress_level = float(random.randint(10, 40))
        self._last_fix_at: Optional[float] = None
        self.movement_pattern: Optional[str] = None

        self.status.location = self.tuning.initial_location or DEFAULT_LOCATION
        if self.tuning.assigned_crew_id:
            self.status.assignment = CrewAssignment(
                crew_id=self.tuning.assigned_crew_id,
                crew_name=self.tuning.crew_name,
            )

    @property
    def crew_status(self) -> CrewStatus:
        if self.status.assignment is None:
            return CrewStatus.OFFLINE
        return self.status.assignment.status

    def _set_crew_status(self, status: CrewStatus):
        if self.status.assignment is not None:
            self.status.assignment = self.status.assignment.model_copy(update={"status": status})

    def schedule_behaviors(self):
        self.scheduler.call_every("health", self.tuning.step_interval, self._health_tick)
        self.scheduler.call_every("location", self.tuning.location_interval, self._location_ping)

    async def on_start(self):
        if self.status.assignment is not None:
            await self._publish_assignment()

    def on_status_tick(self):
        if self.charging:
            self.status.battery = self.status.battery + CHARGE_PER_TICK
            if self.status.battery >= 100:
                self.charging = False

    def extra_status(self):
        assignment = self.status.assignment
        return {
            "assigned_crew_id": assignment.crew_id if assignment else None,
            "crew_status": self.crew_status.value,
            "active_requests": sorted(self.active_requests),
            "charging": self.charging,
            "heart_rate": self.heart_rate,
            "steps": self.steps,
        }

    # ------------------------------------------------------------------
    # Health and location timers
    # ------------------------------------------------------------------

    def _next_heart_rate(self) -> int:
        variation = random.uniform(-5, 5)
        if self.heart_rate > self.tuning.heart_rate_max:
            variation -= 2
        elif self.heart_rate < self.tuning.heart_rate_min:
            variation += 2
        return max(50, min(200, round(self.heart_rate + variation)))

    async def _health_tick(self):
        self.heart_rate = self._next_heart_rate()
        if self.heart_rate > 100:
            self.stress_level = min(100.0, self.stress_level + random.uniform(0, 5))
        else:
            self.stress_level = max(0.0, self.stress_level - random.uniform(0, 2))
        new_steps = random.randint(1, 10)
        self.steps += new_steps
        self.distance += new_steps * STRIDE_M
        self.calories += max(0.0, (self.heart_rate - 60) * 0.1 + random.uniform(0, 2))

        await self.emit(
            HealthPayload(
                heart_rate=self.heart_rate,
                steps=self.steps,
                distance=round(self.distance, 1),
                calories=round(self.calories, 1),
                stress_level=round(self.stress_level),
            ),
            priority=EventPriority.LOW,
            actions=("health",),
        )

    async def _location_ping(self):
        if self.movement_pattern is None and self.status.location is not None:
            await self.update_location(
                self.status.location.latitude, self.status.location.longitude
            )

    # ------------------------------------------------------------------
    # Crew assignment
    # ------------------------------------------------------------------

    async def assign_crew(self, crew_id: str, crew_name: Optional[str] = None):
        self.status.assignment = CrewAssignment(crew_id=crew_id, crew_name=crew_name)
        await self._publish_assignment()
        logger.info(f"{self.device_id} assigned to crew {crew_id}")

    async def _publish_assignment(self):
        assignment = self.status.assignment
        await self.emit(
            AssignmentPayload(
                crew_id=assignment.crew_id if assignment else None,
                crew_name=assignment.crew_name if assignment else None,
                crew_status=self.crew_status,
            ),
            actions=("assign",),
        )

    async def set_crew_status(self, status: str):
        try:
            crew_status = CrewStatus(status)
        except ValueError:
            raise CommandError(f"Unknown crew status '{status}'")
        if self.status.assignment is None:
            raise CommandError("Watch has no crew assignment")
        self._set_crew_status(crew_status)
        await self._publish_assignment()

    # ------------------------------------------------------------------
    # Service request workflow
    # ------------------------------------------------------------------

    async def receive_service_request(
        self,
        request_id: str,
        location: Optional[str] = None,
        priority: str = "normal",
        message: Optional[str] = None,
    ):
        """Queue a request; an available watch auto-accepts it shortly after"""
        try:
            event_priority = EventPriority(priority)
        except ValueError:
            raise CommandError(f"Unknown priority '{priority}'")
        self.active_requests[request_id] = {
            "request_id": request_id,
            "location": location,
            "priority": event_priority.value,
            "message": message,
            "status": "pending",
            "received_at": datetime.utcnow().isoformat(),
        }
        await self.emit(
            RequestPayload(request_id=request_id, action=RequestAction.RECEIVED, location=location),
            priority=event_priority,
            actions=("request",),
        )
        if self.crew_status == CrewStatus.AVAILABLE:
            self.scheduler.call_later(
                f"auto_accept:{request_id}",
                self.tuning.auto_accept_delay,
                lambda: self._auto_accept(request_id),
            )

    async def _auto_accept(self, request_id: str):
        request = self.active_requests.get(request_id)
        if request and request["status"] == "pending":
            await self.accept_request(request_id)

    async def accept_request(self, request_id: str) -> bool:
        request = self.active_requests.get(request_id)
        if request is None:
            logger.warning(f"{self.device_id} cannot accept unknown request {request_id}")
            return False
        self.scheduler.cancel(f"auto_accept:{request_id}")
        request["status"] = "accepted"
        self._set_crew_status(CrewStatus.BUSY)
        await self.emit(
            RequestPayload(
                request_id=request_id,
                action=RequestAction.ACCEPTED,
                location=request.get("location"),
            ),
            actions=("request/accept",),
        )
        return True

    async def decline_request(self, request_id: str, reason: Optional[str] = None) -> bool:
        request = self.active_requests.pop(request_id, None)
        if request is None:
            logger.warning(f"{self.device_id} cannot decline unknown request {request_id}")
            return False
        self.scheduler.cancel(f"auto_accept:{request_id}")
        await self.emit(
            RequestPayload(request_id=request_id, action=RequestAction.DECLINED, reason=reason),
            actions=("request/decline",),
        )
        return True

    async def complete_request(self, request_id: str, notes: Optional[str] = None) -> bool:
        request = self.active_requests.pop(request_id, None)
        if request is None:
            logger.warning(f"{self.device_id} cannot complete unknown request {request_id}")
            return False
        if not self.active_requests:
            self._set_crew_status(CrewStatus.AVAILABLE)
        await self.emit(
            RequestPayload(request_id=request_id, action=RequestAction.COMPLETED, notes=notes),
            actions=("request/complete",),
        )
        return True

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    async def update_location(
        self,
        latitude: float,
        longitude: float,
        deck: Optional[str] = None,
        zone: Optional[str] = None,
    ) -> Location:
        previous = self.status.location
        now = time.monotonic()
        location = Location(
            latitude=latitude,
            longitude=longitude,
            deck=deck or (previous.deck if previous else None),
            zone=zone or (previous.zone if previous else None),
        )
        speed = heading = 0.0
        if previous is not None and self._last_fix_at is not None:
            elapsed = max(now - self._last_fix_at, 1e-3)
            distance = haversine_distance(previous, location)
            speed = distance / elapsed
            if distance > 0:
                heading = initial_bearing(previous, location)
        self._last_fix_at = now
        self.status.location = location

        await self.emit(
            LocationPayload(location=location, speed=round(speed, 2), heading=round(heading, 1)),
            priority=EventPriority.LOW,
            actions=("location",),
        )
        return location

    def simulate_movement(self, pattern: str = "patrol", duration: float = 60.0):
        """Move every 5 s following a pattern for ``duration`` seconds"""
        if pattern not in MOVEMENT_PATTERNS:
            raise CommandError(
                f"Unknown movement pattern '{pattern}' "
                f"(expected one of {', '.join(MOVEMENT_PATTERNS)})"
            )
        duration = require_number("duration", duration)
        self.movement_pattern = pattern
        started = time.monotonic()
        step = 0

        async def move():
            nonlocal step
            if time.monotonic() - started > duration:
                self.movement_pattern = None
                self.scheduler.cancel("movement")
                return
            here = self.status.location or DEFAULT_LOCATION
            lat, lng = here.latitude, here.longitude
            if pattern == "patrol":
                phase = step % 4
                lat += (PATROL_DELTA, 0, -PATROL_DELTA, 0)[phase]
                lng += (0, PATROL_DELTA, 0, -PATROL_DELTA)[phase]
            elif pattern == "random":
                lat += random.uniform(-PATROL_DELTA, PATROL_DELTA)
                lng += random.uniform(-PATROL_DELTA, PATROL_DELTA)
            step += 1
            await self.update_location(lat, lng)

        self.scheduler.call_every("movement", MOVEMENT_STEP, move)

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    async def send_sos(self, message: Optional[str] = None, reason: str = "manual"):
        self.status.battery = self.status.battery - SOS_BATTERY_COST
        event = await self.emit(
            SosPayload(message=message, location=self.status.location, reason=reason),
            priority=EventPriority.CRITICAL,
            actions=("sos",),
        )
        logger.warning(f"{self.device_id} SOS ({reason})")
        return event

    async def simulate_fall(self, impact: Optional[float] = None):
        """Fall detection, followed by an automatic SOS"""
        event = await self.emit(
            FallPayload(
                impact=impact if impact is not None else round(random.uniform(2.5, 6.0), 2),
                location=self.status.location,
            ),
            priority=EventPriority.CRITICAL,
            actions=("fall",),
        )
        self.scheduler.call_later(
            "fall_sos",
            self.tuning.fall_sos_delay,
            lambda: self.send_sos("Fall detected", reason="fall_detected"),
        )
        return event

    async def start_charging(self):
        self.charging = True
        await self.emit(BatteryPayload(level=self.status.battery, charging=True, reason="charging"))

    async def stop_charging(self):
        self.charging = False
        await self.emit(BatteryPayload(level=self.status.battery, charging=False, reason="unplugged"))
