"""
SkyPointer Device Simulator.

Emulates the SkyPointer firmware on a TCP port so the driver can be run and
tested without hardware (connect with ``socket://localhost:<port>``).
"""

import argparse
import asyncio
import logging
import time

try:
    from ..skypointer_protocol import (
        N_CALIB_REGS,
        SPCommand,
        SPCommands,
        STEPS_PER_REVOLUTION,
        SkyPointerError,
        TERMINATOR,
    )
except ImportError:
    from skypointer.skypointer_protocol import (  # type: ignore
        N_CALIB_REGS,
        SPCommand,
        SPCommands,
        STEPS_PER_REVOLUTION,
        SkyPointerError,
        TERMINATOR,
    )

logger = logging.getLogger(__name__)

FIRMWARE_BANNER = "SkyPointer v3.1"
MAX_SPEED = 255
STEPS_PER_SEC_AT_MAX = 1600.0
ALT_LIMIT = STEPS_PER_REVOLUTION // 4


class SkyPointerScope:
    """
    Emulation core of the SkyPointer firmware.

    Positions are integer steps; motion towards the target is advanced by
    ``tick``. Calibration registers keep raw 32-bit patterns.
    """

    def __init__(self, banner: str = FIRMWARE_BANNER):
        self.banner = banner
        self.az = 0
        self.alt = 0
        self.trg_az = 0
        self.trg_alt = 0
        self.speed = MAX_SPEED
        self.laser = False
        self.timeout_ms = 0
        self.calib = [0] * N_CALIB_REGS
        self.cmd_log = []
        self._pos_az = 0.0
        self._pos_alt = 0.0
        self._handlers = {
            SPCommands.GOTO: "goto",
            SPCommands.MOVE: "move",
            SPCommands.STOP: "stop",
            SPCommands.HOME: "home",
            SPCommands.QUIT: "quit",
            SPCommands.LASER: "set_laser",
            SPCommands.SET_TIMEOUT: "set_timeout",
            SPCommands.GET_POSITION: "get_position",
            SPCommands.GET_VERSION: "get_version",
            SPCommands.READ_CALIB: "read_calib",
            SPCommands.WRITE_CALIB: "write_calib",
        }

    @property
    def slewing(self) -> bool:
        return (self._pos_az, self._pos_alt) != (self.trg_az, self.trg_alt)

    def _set_target(self, az: int, alt: int) -> None:
        # Azimuth is not wrapped: a relative move of a full turn is a full turn
        self.trg_az = az
        self.trg_alt = max(-ALT_LIMIT, min(ALT_LIMIT, alt))

    def goto(self, az, alt):
        self.speed = MAX_SPEED
        self._set_target(int(az), int(alt))
        return ""

    def move(self, az, alt, speed=MAX_SPEED):
        self.speed = max(1, min(MAX_SPEED, int(speed)))
        self._set_target(self.trg_az + int(az), self.trg_alt + int(alt))
        return ""

    def stop(self):
        self._pos_az, self._pos_alt = float(round(self._pos_az)), float(self.alt)
        self.trg_az, self.trg_alt = int(self._pos_az), self.alt
        return ""

    def home(self):
        self.az = self.alt = self.trg_az = self.trg_alt = 0
        self._pos_az = self._pos_alt = 0.0
        return ""

    def quit(self):
        self.laser = False
        return ""

    def set_laser(self, enable):
        self.laser = int(enable) != 0
        return ""

    def set_timeout(self, millis):
        self.timeout_ms = int(millis)
        return ""

    def get_position(self):
        return f"P {self.az} {self.alt}"

    def get_version(self):
        return self.banner

    def _calib_index(self, n) -> int:
        n = int(n)
        if not 0 <= n < N_CALIB_REGS:
            raise ValueError(f"No calibration register {n}")
        return n

    def read_calib(self, n):
        return f"R {self.calib[self._calib_index(n)]:08x}"

    def write_calib(self, n, value):
        self.calib[self._calib_index(n)] = int(value, 16) & 0xFFFFFFFF
        return ""

    def tick(self, interval: float) -> None:
        """Physical model update called on every timer tick."""
        step = STEPS_PER_SEC_AT_MAX * self.speed / MAX_SPEED * interval

        d_az = self.trg_az - self._pos_az
        if abs(d_az) <= step:
            self._pos_az = float(self.trg_az)
        else:
            self._pos_az += step * (1 if d_az > 0 else -1)

        d_alt = self.trg_alt - self._pos_alt
        if abs(d_alt) <= step:
            self._pos_alt = float(self.trg_alt)
        else:
            self._pos_alt += step * (1 if d_alt > 0 else -1)

        self.az = int(round(self._pos_az)) % STEPS_PER_REVOLUTION
        self.alt = int(round(self._pos_alt))

    def handle_line(self, line: bytes) -> bytes:
        """Executes one command line and returns the response line."""
        try:
            cmd = SPCommand.parse_buf(line)
            self.cmd_log.append(cmd.command.name)
            resp = getattr(self, self._handlers[cmd.command])(*cmd.args)
        except (SkyPointerError, TypeError, ValueError, IndexError) as e:
            logger.warning("Bad command %r: %s", line, e)
            resp = "E"
        logger.debug("%r -> %r", line, resp)
        return resp.encode("ascii") + TERMINATOR


async def timer(seconds_to_sleep=0.1, scope=None):
    """Timer loop to trigger physical model updates (ticks)."""
    t = time.monotonic()
    while True:
        await asyncio.sleep(seconds_to_sleep)
        cur_t = time.monotonic()
        if scope:
            scope.tick(cur_t - t)
        t = cur_t


async def start_server(scope: SkyPointerScope, host: str = "", port: int = 0):
    """Serves ``scope`` on a TCP port. ``port=0`` picks a free one."""

    async def handle_client(reader, writer):
        peer = writer.get_extra_info("peername")
        logger.info("Client connected from %s", peer)
        try:
            while True:
                try:
                    line = await reader.readuntil(TERMINATOR)
                except asyncio.IncompleteReadError:
                    break
                writer.write(scope.handle_line(line))
                await writer.drain()
        except ConnectionError as e:
            logger.info("Connection error: %s", e)
        finally:
            writer.close()
            logger.info("Connection closed.")

    return await asyncio.start_server(handle_client, host=host, port=port)


async def main_async():
    parser = argparse.ArgumentParser(description="SkyPointer Simulator")
    parser.add_argument(
        "-p", "--port", type=int, default=2000, help="TCP port to listen on"
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug logging to stderr"
    )
    parser.add_argument(
        "--banner", default=FIRMWARE_BANNER, help="Version query response"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    scope = SkyPointerScope(banner=args.banner)
    timer_task = asyncio.create_task(timer(0.1, scope))
    server = await start_server(scope, port=args.port)
    logger.info("Simulator running on port %d", args.port)
    try:
        async with server:
            await server.serve_forever()
    finally:
        timer_task.cancel()


def main():
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
