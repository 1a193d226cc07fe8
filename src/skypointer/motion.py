"""
Motion state machine for the SkyPointer virtual mount.

The reported RA/Dec is not read back from the device while slewing. It is
integrated at a fixed angular rate from the wall-clock time between polls,
so the client sees smooth motion towards the target.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

import ephem

from .skypointer_device import SkyPointer
from .skypointer_protocol import STEPS_PER_REVOLUTION

logger = logging.getLogger(__name__)

SLEW_RATE = 1.0  # slew rate, degrees/s
DEG_PER_HOUR = 15.0


class TrackState(Enum):
    IDLE = "Idle"
    SLEWING = "Slewing"
    TRACKING = "Tracking"


class SlewRate(Enum):
    GUIDE = "SLEW_GUIDE"
    CENTERING = "SLEW_CENTERING"
    FIND = "SLEW_FIND"
    MAX = "SLEW_MAX"


MOTOR_SPEEDS = {
    SlewRate.GUIDE: 10,
    SlewRate.CENTERING: 50,
    SlewRate.FIND: 150,
    SlewRate.MAX: 255,
}


class DirectionNS(Enum):
    NORTH = 1
    SOUTH = -1


class DirectionWE(Enum):
    WEST = -1
    EAST = 1


class MotionCommand(Enum):
    START = "start"
    STOP = "stop"


def format_radec(ra_hours: float, dec_deg: float) -> str:
    """Formats RA/Dec as sexagesimal strings for log messages."""
    ra = ephem.hours(ra_hours * ephem.pi / 12.0)
    dec = ephem.degrees(dec_deg * ephem.pi / 180.0)
    return f"RA: {ra} - DEC: {dec}"


class MotionController:
    """
    Tracks the simulated mount position and the IDLE/SLEWING/TRACKING state.

    Attributes:
        current_ra (float): Reported right ascension in hours.
        current_dec (float): Reported declination in degrees.
        target_ra (float): Slew target right ascension in hours.
        target_dec (float): Slew target declination in degrees.
        track_state (TrackState): Current state.
        slew_rate (SlewRate): Rate used by manual motion commands.
    """

    def __init__(
        self,
        device: Optional[SkyPointer] = None,
        clock: Callable[[], float] = time.time,
        rate: float = SLEW_RATE,
    ):
        self.device = device
        self.clock = clock
        self.rate = rate
        self.current_ra = 0.0
        self.current_dec = 90.0
        self.target_ra = self.current_ra
        self.target_dec = self.current_dec
        self.track_state = TrackState.IDLE
        self.slew_rate = SlewRate.MAX
        self._last_tick: Optional[float] = None

    def goto(self, ra: float, dec: float) -> None:
        """Starts a slew to (ra, dec); a pending target is replaced."""
        self.target_ra = ra
        self.target_dec = dec
        self.track_state = TrackState.SLEWING
        logger.info("Slewing to %s", format_radec(ra, dec))

    def sync(self, ra: float, dec: float) -> None:
        """Re-arms the slew so the reported position converges on a synced point."""
        self.target_ra = ra
        self.target_dec = dec
        self.track_state = TrackState.SLEWING

    def tick(self, now: Optional[float] = None) -> TrackState:
        """
        Advances the simulated position by the time elapsed since the last tick.

        The first call only records the time.
        """
        if now is None:
            now = self.clock()
        dt = 0.0 if self._last_tick is None else now - self._last_tick
        self._last_tick = now
        self.advance(dt)
        return self.track_state

    def advance(self, dt: float) -> None:
        if dt <= 0 or self.track_state != TrackState.SLEWING:
            return

        # Calculate how much we moved since last time
        da_ra = self.rate * dt
        da_dec = self.rate * dt
        nlocked = 0

        # RA is in hours, compare in degrees
        dx = self.target_ra - self.current_ra
        if abs(dx) * DEG_PER_HOUR <= da_ra:
            self.current_ra = self.target_ra
            nlocked += 1
        elif dx > 0:
            self.current_ra += da_ra / DEG_PER_HOUR
        else:
            self.current_ra -= da_ra / DEG_PER_HOUR

        dy = self.target_dec - self.current_dec
        if abs(dy) <= da_dec:
            self.current_dec = self.target_dec
            nlocked += 1
        elif dy > 0:
            self.current_dec += da_dec
        else:
            self.current_dec -= da_dec

        if nlocked == 2:
            self.track_state = TrackState.TRACKING
            logger.info("Slew is complete. Tracking...")

        logger.debug(
            "Current %s", format_radec(self.current_ra, self.current_dec)
        )

    def _motor_speed(self) -> int:
        return MOTOR_SPEEDS[self.slew_rate]

    def _jog_steps(self, fraction: float) -> int:
        steps = int(STEPS_PER_REVOLUTION * fraction)
        if self.slew_rate == SlewRate.GUIDE:
            steps //= 2
        return steps

    async def move_ns(self, direction: DirectionNS, command: MotionCommand) -> bool:
        """Starts or stops manual motion of the altitude axis."""
        if self.device is None:
            return False
        if command == MotionCommand.STOP:
            return await self.device.stop()
        steps = direction.value * self._jog_steps(0.25)
        logger.debug("Moving %s by %d steps", direction.name, steps)
        return await self.device.move(0, steps, self._motor_speed())

    async def move_we(self, direction: DirectionWE, command: MotionCommand) -> bool:
        """Starts or stops manual motion of the azimuth axis."""
        if self.device is None:
            return False
        if command == MotionCommand.STOP:
            return await self.device.stop()
        steps = direction.value * self._jog_steps(1.0)
        logger.debug("Moving %s by %d steps", direction.name, steps)
        return await self.device.move(steps, 0, self._motor_speed())

    async def abort(self) -> bool:
        """
        Stops the device motors.

        The slew target and the state are left alone: a following tick keeps
        moving the reported position towards the old target.
        """
        if self.device is None:
            return False
        return await self.device.stop()
