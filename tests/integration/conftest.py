import pytest
import asyncio
import subprocess
import sys
import os
import time
from typing import Optional

# Constants for integration tests
SIM_PORT = int(os.environ.get("SIM_PORT", 2010))
INDI_SERVER_PORT = 7625
DEVICE_NAME = "SkyPointer"


def _src_env(**extra) -> dict:
    env = os.environ.copy()
    src = os.path.join(os.path.dirname(__file__), "..", "..", "src")
    env["PYTHONPATH"] = os.path.abspath(src)
    env.update(extra)
    return env


def _stop(proc: subprocess.Popen) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(os.getpgid(proc.pid), 15)
        else:
            proc.terminate()
        proc.wait(timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        proc.kill()


@pytest.fixture(scope="session")
def simulator_process():
    """Starts the SkyPointer simulator as a separate process."""
    if os.environ.get("EXTERNAL_SIM"):
        yield None
        return

    cmd = [
        sys.executable,
        "-m",
        "skypointer.simulator.sp_simulator",
        "--port",
        str(SIM_PORT),
    ]
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=_src_env(),
        preexec_fn=os.setsid if hasattr(os, "setsid") else None,
    )

    time.sleep(2)
    yield proc
    _stop(proc)


@pytest.fixture(scope="session")
def driver_process(simulator_process):
    """Starts the SkyPointer driver as a standalone INDI server."""
    pytest.importorskip("indipyserver")
    cmd = [
        sys.executable,
        "-m",
        "skypointer.skypointer_indi_driver",
        "--server",
        "--port",
        str(INDI_SERVER_PORT),
        "--name",
        DEVICE_NAME,
    ]

    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=_src_env(PORT=f"socket://localhost:{SIM_PORT}"),
        preexec_fn=os.setsid if hasattr(os, "setsid") else None,
    )

    time.sleep(3)
    yield proc
    _stop(proc)


class SimpleIndiClient:
    """A lightweight INDI client for integration testing."""

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.buffer = ""
        self._read_task: Optional[asyncio.Task] = None

    async def connect(self, timeout: float = 5.0):
        self.reader, self.writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), timeout=timeout
        )
        self._read_task = asyncio.create_task(self._read_loop())

    async def disconnect(self):
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        if self.writer:
            self.writer.close()
            await self.writer.wait_closed()

    async def _read_loop(self):
        if not self.reader:
            return
        while True:
            data = await self.reader.read(4096)
            if not data:
                break
            self.buffer += data.decode("utf-8", errors="ignore")

    async def send(self, message: str):
        """Sends an INDI message (XML)."""
        if self.writer:
            self.writer.write(message.encode("utf-8"))
            await self.writer.drain()

    async def wait_for(self, pattern: str, timeout: float = 10.0) -> bool:
        """Waits for a specific string pattern to appear in the received XML stream."""
        start_time = time.time()
        while time.time() - start_time < timeout:
            if pattern in self.buffer:
                return True
            await asyncio.sleep(0.1)
        return False

    def clear_buffer(self):
        self.buffer = ""


@pytest.fixture
async def indi_client(driver_process):
    """Provides a connected SimpleIndiClient instance."""
    client = SimpleIndiClient("localhost", INDI_SERVER_PORT)
    await client.connect()
    yield client
    await client.disconnect()
