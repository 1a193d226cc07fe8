import asyncio
import re
import time

import pytest

DEVICE_NAME = "SkyPointer"

RA_RE = re.compile(r"<oneNumber\s+name=[\"']RA[\"']\s*>\s*([^<\s]+)\s*</oneNumber>")

CONNECT_XML = (
    f"<newSwitchVector device='{DEVICE_NAME}' name='CONNECTION'>\n"
    "  <oneSwitch name='CONNECT'>On</oneSwitch>\n"
    "  <oneSwitch name='DISCONNECT'>Off</oneSwitch>\n"
    "</newSwitchVector>"
)


async def connect(indi_client):
    await indi_client.send('<getProperties version="1.7" />')
    await indi_client.send(CONNECT_XML)
    assert await indi_client.wait_for('name="CONNECTION"'), "Failed to connect"
    assert await indi_client.wait_for('state="Ok"'), "Connection state not Ok"


async def wait_for_ra(indi_client, timeout: float = 5.0):
    """Returns the last RA value published in the buffer, None on timeout."""
    start_time = time.time()
    while time.time() - start_time < timeout:
        values = RA_RE.findall(indi_client.buffer)
        if values:
            return values[-1]
        await asyncio.sleep(0.1)
    return None


@pytest.mark.asyncio
async def test_handshake_and_connect(indi_client):
    """Verifies INDI handshake and connection to the hardware (simulator)."""
    await indi_client.send('<getProperties version="1.7" />')

    assert await indi_client.wait_for("defSwitchVector"), (
        "Did not receive defSwitchVector"
    )
    assert await indi_client.wait_for(f'device="{DEVICE_NAME}"'), "Device name mismatch"
    assert await indi_client.wait_for('name="LASER"'), "LASER property not found"

    indi_client.clear_buffer()
    await indi_client.send(CONNECT_XML)
    assert await indi_client.wait_for('name="FIRMWARE_INFO"'), (
        "Firmware version not published"
    )
    assert await indi_client.wait_for("3.1"), "Unexpected firmware version"


@pytest.mark.asyncio
async def test_slew_and_abort(indi_client):
    """Verifies equatorial slew command and subsequent abort."""
    await connect(indi_client)

    indi_client.clear_buffer()
    await indi_client.send(
        f"<newNumberVector device='{DEVICE_NAME}' name='EQUATORIAL_EOD_COORD'>\n"
        "  <oneNumber name='RA'>10.0</oneNumber>\n"
        "  <oneNumber name='DEC'>20.0</oneNumber>\n"
        "</newNumberVector>"
    )
    assert await indi_client.wait_for('name="EQUATORIAL_EOD_COORD"'), (
        "Slew command not acknowledged"
    )
    assert await indi_client.wait_for('state="Busy"'), "Slew state not Busy"

    await indi_client.send(
        f"<newSwitchVector device='{DEVICE_NAME}' name='TELESCOPE_ABORT_MOTION'>\n"
        "  <oneSwitch name='ABORT'>On</oneSwitch>\n"
        "</newSwitchVector>"
    )
    assert await indi_client.wait_for('name="TELESCOPE_ABORT_MOTION"'), (
        "Abort not acknowledged"
    )

    # Abort only stops the motors; the reported position keeps converging
    indi_client.clear_buffer()
    assert await indi_client.wait_for('name="MOUNT_STATUS"', timeout=5.0), (
        "Mount status not polled after abort"
    )
    first = await wait_for_ra(indi_client)
    await asyncio.sleep(2.0)
    indi_client.clear_buffer()
    second = await wait_for_ra(indi_client)
    assert first is not None and second is not None, "RA not published after abort"
    assert first != second, "Reported position stopped moving after abort"


@pytest.mark.asyncio
async def test_device_position_polling(indi_client):
    """Verifies that the poll loop publishes the raw device position."""
    await connect(indi_client)
    indi_client.clear_buffer()
    assert await indi_client.wait_for('name="DEVICE_POSITION"', timeout=5.0), (
        "Device position not polled"
    )
