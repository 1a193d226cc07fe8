"""
SkyPointer INDI Driver

This module implements an INDI driver for the SkyPointer laser pointing
device. It uses the indipydriver library for INDI communication; the mount
logic lives behind the ``MountControl`` interface in ``skypointer_mount``.

Configuration is loaded from config.yaml.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
from typing import Any, Optional

import indipydriver
from indipydriver import (
    IPyDriver,
    Device,
    SwitchVector,
    SwitchMember,
    TextVector,
    TextMember,
    NumberVector,
    NumberMember,
    LightVector,
    LightMember,
)
import numpy as np
import yaml

try:
    from indipyserver import IPyServer

    HAS_SERVER = True
except ImportError:
    HAS_SERVER = False

try:
    from .motion import (
        DirectionNS,
        DirectionWE,
        MotionCommand,
        SlewRate,
        TrackState,
    )
    from .skypointer_mount import MountControl, MountListener, SkyPointerMount
    from .skypointer_protocol import N_CALIB_REGS, STEPS_PER_REVOLUTION
except ImportError:
    from skypointer.motion import (  # type: ignore
        DirectionNS,
        DirectionWE,
        MotionCommand,
        SlewRate,
        TrackState,
    )
    from skypointer.skypointer_mount import (  # type: ignore
        MountControl,
        MountListener,
        SkyPointerMount,
    )
    from skypointer.skypointer_protocol import (  # type: ignore
        N_CALIB_REGS,
        STEPS_PER_REVOLUTION,
    )

logger = logging.getLogger(__name__)

# Load configuration
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_PATH = os.path.join(BASE_DIR, "config.yaml")
DEFAULT_CONFIG = {
    "observer": {"latitude": 40.4168, "longitude": -3.7038, "elevation": 650},
    "driver": {
        "port": "/dev/ttyACM0",
        "baud": 115200,
        "laser_timeout": 0,
        "poll_ms": 250,
        "log_level": "INFO",
    },
    "alignment": {"duplicate_tolerance": 1e-6},
}


def load_config(path: str = CONFIG_PATH) -> dict:
    """Loads configuration from YAML file or returns defaults."""
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                return yaml.safe_load(f) or DEFAULT_CONFIG
        except (OSError, yaml.YAMLError) as e:
            logger.error("Error loading config %s: %s", path, e)
    return DEFAULT_CONFIG


config = load_config()
obs_cfg = config.get("observer", DEFAULT_CONFIG["observer"])
drv_cfg = config.get("driver", DEFAULT_CONFIG["driver"])
align_cfg = config.get("alignment", DEFAULT_CONFIG["alignment"])

POLL_MS = int(drv_cfg.get("poll_ms", 250))

TRACK_LIGHTS = {
    TrackState.IDLE: ("Idle", "Idle"),
    TrackState.SLEWING: ("Busy", "Idle"),
    TrackState.TRACKING: ("Idle", "Ok"),
}


class SkyPointerDriver(IPyDriver, MountListener):
    """
    INDI Driver for the SkyPointer.

    Defines the INDI properties and forwards client requests to a
    ``MountControl``. Receives mount updates as its ``MountListener``.
    """

    def __init__(
        self, driver_name: str = "SkyPointer", mount: Optional[MountControl] = None
    ) -> None:
        # 1. Define INDI properties
        self._init_properties()

        # 2. Initialize device with properties
        self.device = Device(
            driver_name,
            [
                self.connection_vector,
                self.port_vector,
                self.baud_vector,
                self.firmware_vector,
                self.device_position_vector,
                self.mount_status_vector,
                self.equatorial_vector,
                self.coord_set_vector,
                self.abort_motion_vector,
                self.motion_ns_vector,
                self.motion_we_vector,
                self.slew_rate_vector,
                self.home_vector,
                self.laser_vector,
                self.laser_timeout_vector,
                self.calibration_vector,
                self.location_vector,
                self.align_status_vector,
            ],
        )

        super().__init__(self.device)

        # 3. Mount core, reporting back to this driver
        self.mount: MountControl = mount or SkyPointerMount(
            laser_timeout=int(float(self.laser_timeout.membervalue)),
            duplicate_tolerance=float(align_cfg.get("duplicate_tolerance", 1e-6)),
        )
        self.mount.listener = self
        self.mount.update_location(
            float(self.lat.membervalue),
            float(self.long.membervalue),
            float(self.elev.membervalue),
        )

    def _init_properties(self) -> None:
        """Initializes all INDI property vectors and members."""
        # Connection
        self.conn_connect = SwitchMember("CONNECT", "Connect", "Off")
        self.conn_disconnect = SwitchMember("DISCONNECT", "Disconnect", "On")
        self.connection_vector = SwitchVector(
            "CONNECTION",
            "Connection",
            "Main Control",
            "rw",
            "OneOfMany",
            "Idle",
            [self.conn_connect, self.conn_disconnect],
        )

        # Port settings
        self.port_name = TextMember(
            "PORT",
            "Port",
            os.environ.get("PORT", drv_cfg.get("port", "/dev/ttyACM0")),
        )
        self.baud_rate = NumberMember(
            "RATE",
            "Baud Rate",
            "%d",
            "9600",
            "230400",
            "1",
            os.environ.get("BAUD", str(drv_cfg.get("baud", 115200))),
        )
        self.port_vector = TextVector(
            "DEVICE_PORT", "Ports", "Connection", "rw", "Idle", [self.port_name]
        )
        self.baud_vector = NumberVector(
            "DEVICE_BAUD_RATE", "Baud Rate", "Connection", "rw", "Idle", [self.baud_rate]
        )

        # Firmware Info
        self.fw_version = TextMember("VERSION", "Version", "")
        self.firmware_vector = TextVector(
            "FIRMWARE_INFO",
            "Firmware Info",
            "Device Info",
            "ro",
            "Idle",
            [self.fw_version],
        )

        # Raw position (Steps)
        self.az_steps = NumberMember(
            "AZ_STEPS", "AZ Steps", "%d", "0", str(STEPS_PER_REVOLUTION - 1), "1", "0"
        )
        self.alt_steps = NumberMember(
            "ALT_STEPS",
            "ALT Steps",
            "%d",
            str(-STEPS_PER_REVOLUTION // 4),
            str(STEPS_PER_REVOLUTION // 4),
            "1",
            "0",
        )
        self.device_position_vector = NumberVector(
            "DEVICE_POSITION",
            "Device Position",
            "Device Info",
            "ro",
            "Idle",
            [self.az_steps, self.alt_steps],
        )

        # Status indicators
        self.slewing_light = LightMember("SLEWING", "Slewing", "Idle")
        self.tracking_light = LightMember("TRACKING", "Tracking", "Idle")
        self.mount_status_vector = LightVector(
            "MOUNT_STATUS",
            "Mount Status",
            "Main Control",
            "Idle",
            [self.slewing_light, self.tracking_light],
        )

        # Equatorial coordinates
        self.ra = NumberMember(
            "RA", "RA (hh:mm:ss)", "%010.6m", "0", "24", "0", "0"
        )
        self.dec = NumberMember(
            "DEC", "DEC (dd:mm:ss)", "%010.6m", "-90", "90", "0", "90"
        )
        self.equatorial_vector = NumberVector(
            "EQUATORIAL_EOD_COORD",
            "Eq. Coordinates",
            "Main Control",
            "rw",
            "Idle",
            [self.ra, self.dec],
        )

        self.set_slew = SwitchMember("SLEW", "Slew", "On")
        self.set_sync = SwitchMember("SYNC", "Sync", "Off")
        self.coord_set_vector = SwitchVector(
            "TELESCOPE_ON_COORD_SET",
            "On Set",
            "Main Control",
            "rw",
            "OneOfMany",
            "Idle",
            [self.set_slew, self.set_sync],
        )

        self.abort_motion = SwitchMember("ABORT", "Abort", "Off")
        self.abort_motion_vector = SwitchVector(
            "TELESCOPE_ABORT_MOTION",
            "Abort Motion",
            "Main Control",
            "rw",
            "AtMostOne",
            "Idle",
            [self.abort_motion],
        )

        # Motion control
        self.motion_n = SwitchMember("MOTION_NORTH", "North", "Off")
        self.motion_s = SwitchMember("MOTION_SOUTH", "South", "Off")
        self.motion_ns_vector = SwitchVector(
            "TELESCOPE_MOTION_NS",
            "Motion N/S",
            "Motion Control",
            "rw",
            "AtMostOne",
            "Idle",
            [self.motion_n, self.motion_s],
        )

        self.motion_w = SwitchMember("MOTION_WEST", "West", "Off")
        self.motion_e = SwitchMember("MOTION_EAST", "East", "Off")
        self.motion_we_vector = SwitchVector(
            "TELESCOPE_MOTION_WE",
            "Motion W/E",
            "Motion Control",
            "rw",
            "AtMostOne",
            "Idle",
            [self.motion_w, self.motion_e],
        )

        self.slew_guide = SwitchMember(SlewRate.GUIDE.value, "Guide", "Off")
        self.slew_centering = SwitchMember(SlewRate.CENTERING.value, "Centering", "Off")
        self.slew_find = SwitchMember(SlewRate.FIND.value, "Find", "Off")
        self.slew_max = SwitchMember(SlewRate.MAX.value, "Max", "On")
        self.slew_rate_vector = SwitchVector(
            "TELESCOPE_SLEW_RATE",
            "Slew Rate",
            "Motion Control",
            "rw",
            "OneOfMany",
            "Idle",
            [self.slew_guide, self.slew_centering, self.slew_find, self.slew_max],
        )

        self.home_switch = SwitchMember("HOME", "Home", "Off")
        self.home_vector = SwitchVector(
            "TELESCOPE_HOME",
            "Home",
            "Motion Control",
            "rw",
            "AtMostOne",
            "Idle",
            [self.home_switch],
        )

        # Laser
        self.laser_on = SwitchMember("LASER_ON", "On", "Off")
        self.laser_off = SwitchMember("LASER_OFF", "Off", "On")
        self.laser_vector = SwitchVector(
            "LASER",
            "Laser",
            "Main Control",
            "rw",
            "OneOfMany",
            "Idle",
            [self.laser_on, self.laser_off],
        )

        self.laser_timeout = NumberMember(
            "TIMEOUT",
            "Timeout (ms, 0=never)",
            "%d",
            "0",
            "3600000",
            "100",
            str(drv_cfg.get("laser_timeout", 0)),
        )
        self.laser_timeout_vector = NumberVector(
            "LASER_TIMEOUT",
            "Laser Timeout",
            "Options",
            "rw",
            "Idle",
            [self.laser_timeout],
        )

        # Calibration registers
        self.calib_regs = [
            NumberMember(f"REG_{i}", f"Register {i}", "%.6g", "-1e38", "1e38", "0", "0")
            for i in range(N_CALIB_REGS)
        ]
        self.calibration_vector = NumberVector(
            "CALIBRATION",
            "Calibration",
            "Options",
            "rw",
            "Idle",
            self.calib_regs,
        )

        # Geographical location
        self.lat = NumberMember(
            "LAT",
            "Lat (dd:mm:ss)",
            "%010.6m",
            "-90",
            "90",
            "0",
            str(obs_cfg.get("latitude", 0.0)),
        )
        self.long = NumberMember(
            "LONG",
            "Lon (dd:mm:ss)",
            "%010.6m",
            "0",
            "360",
            "0",
            str(float(obs_cfg.get("longitude", 0.0)) % 360.0),
        )
        self.elev = NumberMember(
            "ELEV",
            "Elevation (m)",
            "%g",
            "-200",
            "10000",
            "0",
            str(obs_cfg.get("elevation", 0.0)),
        )
        self.location_vector = NumberVector(
            "GEOGRAPHIC_COORD",
            "Scope Location",
            "Site Management",
            "rw",
            "Idle",
            [self.lat, self.long, self.elev],
        )

        # Alignment Status (Read Only)
        self.align_point_count = NumberMember(
            "POINT_COUNT", "Point Count", "%d", "0", "1000", "1", "0"
        )
        self.align_rms_error = NumberMember(
            "RMS_ERROR", "RMS Error (arcsec)", "%.2f", "0", "360000", "0", "0"
        )
        self.align_status_vector = NumberVector(
            "ALIGNMENT_STATUS",
            "Alignment Status",
            "Alignment",
            "ro",
            "Idle",
            [self.align_point_count, self.align_rms_error],
        )

    async def rxevent(self, event: Any) -> None:
        """Main event handler for INDI property updates."""
        if event.vectorname == "CONNECTION":
            await self.handle_connection(event)
        elif event.vectorname == "DEVICE_PORT":
            self.port_vector.update(event)
            await self.port_vector.send_setVector(state="Ok")
        elif event.vectorname == "DEVICE_BAUD_RATE":
            self.baud_vector.update(event)
            await self.baud_vector.send_setVector(state="Ok")
        elif event.vectorname == "EQUATORIAL_EOD_COORD":
            await self.handle_equatorial_goto(event)
        elif event.vectorname == "TELESCOPE_ON_COORD_SET":
            self.coord_set_vector.update(event)
            await self.coord_set_vector.send_setVector(state="Ok")
        elif event.vectorname == "TELESCOPE_ABORT_MOTION":
            await self.handle_abort_motion(event)
        elif event.vectorname == "TELESCOPE_MOTION_NS":
            await self.handle_motion_ns(event)
        elif event.vectorname == "TELESCOPE_MOTION_WE":
            await self.handle_motion_we(event)
        elif event.vectorname == "TELESCOPE_SLEW_RATE":
            await self.handle_slew_rate(event)
        elif event.vectorname == "TELESCOPE_HOME":
            await self.handle_home(event)
        elif event.vectorname == "LASER":
            await self.handle_laser(event)
        elif event.vectorname == "LASER_TIMEOUT":
            await self.handle_laser_timeout(event)
        elif event.vectorname == "CALIBRATION":
            await self.handle_calibration(event)
        elif event.vectorname == "GEOGRAPHIC_COORD":
            await self.handle_location(event)

    # MountListener

    async def position_changed(self, ra: float, dec: float, state: TrackState) -> None:
        self.ra.membervalue = ra
        self.dec.membervalue = dec
        slewing, tracking = TRACK_LIGHTS[state]
        self.slewing_light.membervalue = slewing
        self.tracking_light.membervalue = tracking
        await self.mount_status_vector.send_setVector()
        await self.equatorial_vector.send_setVector(
            state="Busy" if state == TrackState.SLEWING else "Ok"
        )

    async def attitude_changed(self, az_steps: int, alt_steps: int) -> None:
        self.az_steps.membervalue = az_steps
        self.alt_steps.membervalue = alt_steps
        await self.device_position_vector.send_setVector(state="Ok")

    async def sync_points_changed(self, count: int, rms_error: float) -> None:
        self.align_point_count.membervalue = count
        self.align_rms_error.membervalue = rms_error
        await self.align_status_vector.send_setVector(state="Ok")

    # Handlers

    async def handle_connection(self, event: Any) -> None:
        """Handles CONNECT/DISCONNECT switches."""
        if event:
            self.connection_vector.update(event)
        if self.conn_connect.membervalue == "On":
            await self.connection_vector.send_setVector(state="Busy")
            if await self.mount.connect(
                self.port_name.membervalue, int(float(self.baud_rate.membervalue))
            ):
                await self.connection_vector.send_setVector(state="Ok")
                self.fw_version.membervalue = self.mount.firmware_version
                await self.firmware_vector.send_setVector(state="Ok")
                await self.update_calibration_vector()
                await self.mount.read_scope_status()
            else:
                logger.warning("Failed to connect to SkyPointer.")
                self.conn_connect.membervalue = "Off"
                self.conn_disconnect.membervalue = "On"
                await self.connection_vector.send_setVector(state="Alert")
        else:
            await self.mount.disconnect()
            await self.connection_vector.send_setVector(state="Idle")

    async def update_calibration_vector(self) -> None:
        values = self.mount.calibration
        if len(values) != N_CALIB_REGS:
            await self.calibration_vector.send_setVector(state="Alert")
            return
        for member, value in zip(self.calib_regs, values):
            member.membervalue = float(value)
        await self.calibration_vector.send_setVector(state="Ok")

    async def handle_equatorial_goto(self, event: Any) -> None:
        """Handles GoTo or Sync command using RA/Dec coordinates."""
        if event is not None:
            self.equatorial_vector.update(event)

        target_ra = float(self.ra.membervalue)
        target_dec = float(self.dec.membervalue)

        if self.set_sync.membervalue == "On":
            ok = await self.mount.sync(target_ra, target_dec)
        else:
            ok = await self.mount.goto(target_ra, target_dec)
            if ok:
                await self.mount.report_position()

        if not ok:
            # The members hold the rejected request; republish the real position
            await self.mount.report_position()
            await self.equatorial_vector.send_setVector(state="Alert")

    async def handle_abort_motion(self, event: Any) -> None:
        """Stops the device motors."""
        if event is not None:
            self.abort_motion_vector.update(event)
        if self.abort_motion.membervalue == "On":
            ok = await self.mount.abort()
            self.abort_motion.membervalue = "Off"
            await self.abort_motion_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_motion_ns(self, event: Any) -> None:
        """Handles manual North/South slew commands."""
        if event is not None:
            self.motion_ns_vector.update(event)
        if self.motion_n.membervalue == "On":
            ok = await self.mount.move_ns(DirectionNS.NORTH, MotionCommand.START)
        elif self.motion_s.membervalue == "On":
            ok = await self.mount.move_ns(DirectionNS.SOUTH, MotionCommand.START)
        else:
            ok = await self.mount.move_ns(DirectionNS.NORTH, MotionCommand.STOP)
        await self.motion_ns_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_motion_we(self, event: Any) -> None:
        """Handles manual West/East slew commands."""
        if event is not None:
            self.motion_we_vector.update(event)
        if self.motion_w.membervalue == "On":
            ok = await self.mount.move_we(DirectionWE.WEST, MotionCommand.START)
        elif self.motion_e.membervalue == "On":
            ok = await self.mount.move_we(DirectionWE.EAST, MotionCommand.START)
        else:
            ok = await self.mount.move_we(DirectionWE.WEST, MotionCommand.STOP)
        await self.motion_we_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_slew_rate(self, event: Any) -> None:
        """Selects the motor speed used by manual motion."""
        if event is not None:
            self.slew_rate_vector.update(event)
        for member in (
            self.slew_guide,
            self.slew_centering,
            self.slew_find,
            self.slew_max,
        ):
            if member.membervalue == "On":
                self.mount.set_slew_rate(SlewRate(member.name))
                break
        await self.slew_rate_vector.send_setVector(state="Ok")

    async def handle_home(self, event: Any) -> None:
        if event is not None:
            self.home_vector.update(event)
        if self.home_switch.membervalue == "On":
            await self.home_vector.send_setVector(state="Busy")
            ok = await self.mount.home()
            self.home_switch.membervalue = "Off"
            await self.home_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_laser(self, event: Any) -> None:
        """Switches the laser on or off."""
        if event is not None:
            self.laser_vector.update(event)
        ok = await self.mount.set_laser(self.laser_on.membervalue == "On")
        await self.laser_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_laser_timeout(self, event: Any) -> None:
        if event is not None:
            self.laser_timeout_vector.update(event)
        ok = await self.mount.set_laser_timeout(int(float(self.laser_timeout.membervalue)))
        await self.laser_timeout_vector.send_setVector(state="Ok" if ok else "Alert")

    async def handle_calibration(self, event: Any) -> None:
        """Writes the calibration registers to the device."""
        if event is not None:
            self.calibration_vector.update(event)
        values = [np.float32(float(m.membervalue)) for m in self.calib_regs]
        await self.calibration_vector.send_setVector(state="Busy")
        if await self.mount.write_calibration(values):
            await self.update_calibration_vector()
        else:
            logger.warning("Calibration write failed, the full set must be rewritten")
            await self.calibration_vector.send_setVector(state="Alert")

    async def handle_location(self, event: Any) -> None:
        """Passes a new geographic location to the mount."""
        if event is not None:
            self.location_vector.update(event)
        ok = self.mount.update_location(
            float(self.lat.membervalue),
            float(self.long.membervalue),
            float(self.elev.membervalue),
        )
        await self.location_vector.send_setVector(state="Ok" if ok else "Alert")

    async def hardware(self) -> None:
        """Periodically poll hardware status."""
        while True:
            if self.mount.connected:
                await self.mount.read_scope_status()
            await asyncio.sleep(POLL_MS / 1000.0)


def main() -> None:
    """Entry point for the INDI driver."""
    parser = argparse.ArgumentParser(description="SkyPointer INDI Driver")
    parser.add_argument("-p", "--port", type=int, default=7624, help="INDI port")
    parser.add_argument("-n", "--name", default="SkyPointer", help="Device name")
    parser.add_argument(
        "-s", "--server", action="store_true", help="Start as standalone INDI server"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug logging to stderr"
    )
    args = parser.parse_args()

    level = "DEBUG" if args.debug else str(drv_cfg.get("log_level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    logger.debug("indipydriver %s", getattr(indipydriver, "version", "unknown"))

    driver = SkyPointerDriver(driver_name=args.name)

    if args.server:
        if not HAS_SERVER:
            logger.error("indipyserver not installed. Run: pip install .[server]")
            return
        server = IPyServer(driver, port=args.port)
        asyncio.run(server.asyncrun())
    else:
        asyncio.run(driver.asyncrun())


if __name__ == "__main__":
    main()
