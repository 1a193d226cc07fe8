"""
SkyPointer virtual mount.

``SkyPointerMount`` ties the serial session, the device command set, the
motion state machine and the alignment subsystem together, and exposes them
to a host framework through the ``MountControl`` interface. Results flow
back through a ``MountListener``.
"""

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import ephem

from .alignment import (
    AlignmentModel,
    SyncPoint,
    SyncPointStore,
    vector_from_altaz,
    vector_to_altaz,
)
from .motion import (
    DirectionNS,
    DirectionWE,
    MotionCommand,
    MotionController,
    SlewRate,
    TrackState,
    format_radec,
)
from .skypointer_device import SkyPointer
from .skypointer_protocol import (
    SPCommunicator,
    SkyPointerError,
    DuplicateSyncPointError,
    degrees_to_steps,
    steps_to_degrees,
)

logger = logging.getLogger(__name__)


class MountListener:
    """Receives state changes from the mount. Methods are no-ops by default."""

    async def position_changed(
        self, ra: float, dec: float, state: TrackState
    ) -> None:
        pass

    async def attitude_changed(self, az_steps: int, alt_steps: int) -> None:
        pass

    async def sync_points_changed(self, count: int, rms_error: float) -> None:
        pass


class MountControl(ABC):
    """
    Capability interface a host framework drives the mount through.

    Implementations also expose ``firmware_version`` (str) and
    ``calibration`` (list of register values) as read after connecting.
    """

    listener: MountListener
    firmware_version: str
    calibration: List

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self, port: str, baudrate: int) -> bool: ...

    @abstractmethod
    async def disconnect(self) -> bool: ...

    @abstractmethod
    async def goto(self, ra: float, dec: float) -> bool: ...

    @abstractmethod
    async def sync(self, ra: float, dec: float) -> bool: ...

    @abstractmethod
    async def abort(self) -> bool: ...

    @abstractmethod
    async def move_ns(self, direction: DirectionNS, command: MotionCommand) -> bool: ...

    @abstractmethod
    async def move_we(self, direction: DirectionWE, command: MotionCommand) -> bool: ...

    @abstractmethod
    async def read_scope_status(self) -> bool: ...

    @abstractmethod
    def set_slew_rate(self, rate: SlewRate) -> None: ...

    @abstractmethod
    async def set_laser(self, enable: bool) -> bool: ...

    @abstractmethod
    async def set_laser_timeout(self, millis: int) -> bool: ...

    @abstractmethod
    async def home(self) -> bool: ...

    @abstractmethod
    async def write_calibration(self, values: Sequence) -> bool: ...

    @abstractmethod
    async def report_position(self) -> None: ...

    @abstractmethod
    def update_location(self, latitude: float, longitude: float, elevation: float) -> bool: ...


class SkyPointerMount(MountControl):
    """
    MountControl implementation for the SkyPointer.

    Attributes:
        communicator (SPCommunicator): Open session, None while disconnected.
        device (SkyPointer): Command set bound to the session.
        motion (MotionController): Simulated position and tracking state.
        sync_points (SyncPointStore): Alignment observations.
        alignment (AlignmentModel): Fitted sky-to-device transform.
        attitude (tuple): Last known (az, alt) device steps.
    """

    def __init__(
        self,
        listener: Optional[MountListener] = None,
        laser_timeout: int = 0,
        duplicate_tolerance: Optional[float] = None,
        clock=None,
    ):
        self.listener = listener if listener is not None else MountListener()
        self.laser_timeout = laser_timeout
        self.communicator: Optional[SPCommunicator] = None
        self.device: Optional[SkyPointer] = None
        self.motion = (
            MotionController() if clock is None else MotionController(clock=clock)
        )
        self.sync_points = (
            SyncPointStore()
            if duplicate_tolerance is None
            else SyncPointStore(duplicate_tolerance)
        )
        self.alignment = AlignmentModel()
        self.attitude: Tuple[int, int] = (0, 0)
        self.firmware_version = ""
        self.calibration: List = []

        self.observer = ephem.Observer()
        self.observer.pressure = 0

    @property
    def connected(self) -> bool:
        return self.communicator is not None and self.communicator.connected

    async def connect(self, port: str, baudrate: int = 115200) -> bool:
        """
        Opens the session, homes the device and reads its firmware version.

        Any failure in these steps aborts the connection. An open session
        is closed first.
        """
        if self.communicator is not None:
            await self.disconnect()
        communicator = SPCommunicator(port, baudrate)
        if not await communicator.connect():
            return False

        device = SkyPointer(communicator)
        try:
            if not await device.home():
                raise SkyPointerError("Device refused to home")
            self.firmware_version = await device.query_version()
        except SkyPointerError as e:
            logger.error("Failed to initialize SkyPointer on %s: %s", port, e)
            await communicator.disconnect()
            return False

        self.communicator = communicator
        self.device = device
        self.motion.device = device
        logger.info("SkyPointer firmware version %s", self.firmware_version)

        if self.laser_timeout > 0 and not await device.set_timeout(self.laser_timeout):
            logger.warning("Failed to set laser timeout")
        await self.read_calibration()
        return True

    async def disconnect(self) -> bool:
        if self.communicator is None:
            return True
        if self.connected and not await self.device.quit():
            logger.warning("Device did not acknowledge quit")
        await self.communicator.disconnect()
        self.communicator = None
        self.device = None
        self.motion.device = None
        return True

    async def read_calibration(self) -> bool:
        """Reads the calibration registers into ``self.calibration``."""
        if not self.connected:
            return False
        try:
            self.calibration = await self.device.get_calibration()
        except SkyPointerError as e:
            logger.warning("Failed to read calibration: %s", e)
            return False
        return True

    async def write_calibration(self, values: Sequence) -> bool:
        """Writes all calibration registers, then reads them back."""
        if not self.connected:
            return False
        ok = await self.device.set_calibration(values)
        await self.read_calibration()
        return ok

    def update_location(self, latitude: float, longitude: float, elevation: float) -> bool:
        """Updates the ephem Observer used for RA/Dec <-> Alt/Az."""
        self.observer.lat = str(latitude)
        self.observer.lon = str(longitude)
        self.observer.elevation = float(elevation)
        return True

    def set_slew_rate(self, rate: SlewRate) -> None:
        self.motion.slew_rate = rate

    async def set_laser(self, enable: bool) -> bool:
        if not self.connected:
            return False
        return await self.device.set_laser(enable)

    async def set_laser_timeout(self, millis: int) -> bool:
        """Stores the laser timeout and applies it if a device is connected."""
        self.laser_timeout = int(millis)
        if not self.connected:
            return True
        return await self.device.set_timeout(self.laser_timeout)

    async def home(self) -> bool:
        if not self.connected:
            return False
        return await self.device.home()

    async def read_attitude(self) -> Tuple[int, int]:
        """
        Queries the device position. On failure the last known value stands.
        """
        if not self.connected:
            return self.attitude
        try:
            self.attitude = await self.device.query_position()
        except SkyPointerError as e:
            logger.warning("Position query failed, keeping last known value: %s", e)
            return self.attitude
        await self.listener.attitude_changed(*self.attitude)
        return self.attitude

    def horizontal_of(self, ra: float, dec: float, when=None) -> Tuple[float, float]:
        """Returns the ideal (az, alt) in degrees of RA/Dec at ``when``."""
        if isinstance(when, datetime):
            when = when.astimezone(timezone.utc).replace(tzinfo=None)
        self.observer.date = when or ephem.now()
        self.observer.epoch = self.observer.date

        body = ephem.FixedBody()
        body._ra = math.radians(ra * 15.0)
        body._dec = math.radians(dec)
        body._epoch = self.observer.date
        body.compute(self.observer)
        return math.degrees(float(body.az)), math.degrees(float(body.alt))

    def equatorial_to_steps(self, ra: float, dec: float) -> Tuple[int, int]:
        """Converts RA/Dec to device steps through the alignment model."""
        az, alt = self.horizontal_of(ra, dec)
        sky_vec = vector_from_altaz(az, alt)
        real_az, real_alt = vector_to_altaz(self.alignment.transform_to_mount(sky_vec))
        return degrees_to_steps(real_az), degrees_to_steps(real_alt)

    async def goto(self, ra: float, dec: float) -> bool:
        """Starts a slew; the device is pointed at the target when connected."""
        self.motion.goto(ra, dec)
        if not self.connected:
            return True
        az_steps, alt_steps = self.equatorial_to_steps(ra, dec)
        if not await self.device.goto(az_steps, alt_steps):
            logger.error("Device refused goto to %s", format_radec(ra, dec))
            return False
        return True

    async def sync(self, ra: float, dec: float) -> bool:
        """
        Adds a sync point relating (ra, dec) to the current device attitude.

        Returns False if the attitude duplicates a stored point.
        """
        az_steps, alt_steps = await self.read_attitude()
        direction = tuple(
            vector_from_altaz(steps_to_degrees(az_steps), steps_to_degrees(alt_steps))
        )
        point = SyncPoint(datetime.now(timezone.utc), ra, dec, direction)
        try:
            self.sync_points.add(point)
        except DuplicateSyncPointError as e:
            logger.warning("Sync rejected: %s", e)
            return False

        logger.info(
            "Sync point %d added at %s", len(self.sync_points), format_radec(ra, dec)
        )
        self.recompute_alignment()
        await self.listener.sync_points_changed(
            len(self.sync_points), self.alignment.rms_error_arcsec
        )
        self.motion.sync(ra, dec)
        await self.report_position()
        return True

    def recompute_alignment(self) -> None:
        pairs = [
            (vector_from_altaz(*self.horizontal_of(p.ra, p.dec, p.observed_at)), p.direction)
            for p in self.sync_points
        ]
        self.alignment.recompute(pairs)

    async def abort(self) -> bool:
        return await self.motion.abort()

    async def move_ns(self, direction: DirectionNS, command: MotionCommand) -> bool:
        return await self.motion.move_ns(direction, command)

    async def move_we(self, direction: DirectionWE, command: MotionCommand) -> bool:
        return await self.motion.move_we(direction, command)

    async def report_position(self) -> None:
        await self.listener.position_changed(
            self.motion.current_ra, self.motion.current_dec, self.motion.track_state
        )

    async def read_scope_status(self) -> bool:
        """Poll tick: advances the simulated slew, reads the device, reports."""
        self.motion.tick()
        await self.read_attitude()
        await self.report_position()
        return True
