"""
SkyPointer device command set.

Typed operations on top of ``SPCommunicator``: one serial exchange per call.
Fire-and-forget commands report a device refusal as ``False``; queries raise
the transport or protocol error so the caller decides how fatal it is.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .skypointer_protocol import (
    N_CALIB_REGS,
    SPCommand,
    SPCommands,
    SPCommunicator,
    SkyPointerError,
    decode_version,
    encode_calib_value,
    parse_calib_register,
    parse_position,
)

logger = logging.getLogger(__name__)


def _check_register(n: int) -> None:
    if not 0 <= n < N_CALIB_REGS:
        raise ValueError(f"Calibration register {n} out of range 0..{N_CALIB_REGS - 1}")


class SkyPointer:
    """Command set of a connected SkyPointer."""

    def __init__(self, communicator: SPCommunicator):
        self.communicator = communicator

    async def _simple(self, command: SPCommand) -> bool:
        try:
            await self.communicator.execute(command)
        except SkyPointerError as e:
            logger.error("Command %s failed: %s", command.command.name, e)
            return False
        return True

    async def home(self) -> bool:
        return await self._simple(SPCommand(SPCommands.HOME))

    async def quit(self) -> bool:
        return await self._simple(SPCommand(SPCommands.QUIT))

    async def stop(self) -> bool:
        return await self._simple(SPCommand(SPCommands.STOP))

    async def move(
        self, az_steps: int, alt_steps: int, speed: Optional[int] = None
    ) -> bool:
        """Moves both axes by a relative number of steps."""
        args = [int(az_steps), int(alt_steps)]
        if speed is not None:
            args.append(int(speed))
        return await self._simple(SPCommand(SPCommands.MOVE, *args))

    async def goto(self, az_steps: int, alt_steps: int) -> bool:
        """Moves both axes to an absolute step position."""
        return await self._simple(
            SPCommand(SPCommands.GOTO, int(az_steps), int(alt_steps))
        )

    async def set_laser(self, enable: bool) -> bool:
        return await self._simple(SPCommand(SPCommands.LASER, 1 if enable else 0))

    async def set_timeout(self, millis: int) -> bool:
        """Sets the laser auto-off timeout of the device."""
        return await self._simple(SPCommand(SPCommands.SET_TIMEOUT, int(millis)))

    async def query_position(self) -> Tuple[int, int]:
        """Returns the current (azimuth, altitude) step counts."""
        response = await self.communicator.execute(SPCommand(SPCommands.GET_POSITION))
        return parse_position(response)

    async def query_version(self) -> str:
        """Returns the firmware version as "major.minor"."""
        response = await self.communicator.execute(SPCommand(SPCommands.GET_VERSION))
        return decode_version(response)

    async def get_calib_register(self, n: int) -> np.float32:
        _check_register(n)
        response = await self.communicator.execute(SPCommand(SPCommands.READ_CALIB, n))
        return parse_calib_register(response)

    async def set_calib_register(self, n: int, value) -> bool:
        _check_register(n)
        return await self._simple(
            SPCommand(SPCommands.WRITE_CALIB, n, encode_calib_value(value))
        )

    async def get_calibration(self) -> List[np.float32]:
        """
        Reads all calibration registers in index order.

        Raises:
            SkyPointerError: On the first register that cannot be read.
        """
        return [await self.get_calib_register(i) for i in range(N_CALIB_REGS)]

    async def set_calibration(self, values: Sequence) -> bool:
        """
        Writes all calibration registers in index order.

        Stops at the first failure. Registers written before the failure
        stay applied on the device, so a False result calls for writing the
        whole set again.
        """
        if len(values) != N_CALIB_REGS:
            raise ValueError(f"Expected {N_CALIB_REGS} calibration values")
        for i, value in enumerate(values):
            if not await self.set_calib_register(i, value):
                logger.warning("Calibration write stopped at register %d", i)
                return False
        return True
