"""SPP connection manager command-line orchestrator.

Runs one of the four CLI modes against a Session and translates the
exception hierarchy to exit codes:

- scan:    list SPP devices found within the timeout
- start:   register the server profile and idle (inspect with sdptool)
- server:  register the server profile and accept one connection
- connect: connect to a device, chosen interactively if not given
"""

import asyncio
import logging
import os
import sys
from typing import TextIO

from .constants import DEFAULT_RFCOMM_CHANNEL, ExitCode
from .device import Device
from .exceptions import (
    ConnMgrError,
    DbusPermissionError,
    OperationCancelledError,
    UsageError,
)
from .output import OutputFormatter
from .session import ServerOptions, Session

logger = logging.getLogger(__name__)

MODES = ("scan", "start", "server", "connect")


class SppConnectApp:
    """Orchestrates one CLI run.

    The whole run shares a single deadline: every step gets whatever is
    left of ``timeout``.

    Args:
        mode: One of MODES.
        service_name: Server profile name (start and server modes).
        device_path: Target device path (connect mode); scan and prompt
            when empty.
        timeout: Overall deadline in seconds.
        verbose: Enable verbose output.
        session: Session to use; a new one is created when omitted.
        stdin: Stream the device index is read from (connect mode).
    """

    def __init__(
        self,
        mode: str,
        service_name: str,
        device_path: str = "",
        timeout: float = 15.0,
        verbose: bool = False,
        session: Session | None = None,
        stdin: TextIO | None = None,
    ) -> None:
        self._mode = mode
        self._service_name = service_name
        self._device_path = device_path
        self._timeout = timeout
        self._output = OutputFormatter(verbose=verbose)
        self._session = session or Session()
        self._stdin = stdin
        self._deadline = 0.0

    async def run(self, cancel: asyncio.Event | None = None) -> ExitCode:
        """Executes the selected mode.

        Args:
            cancel: Event that aborts the run when set (Ctrl-C).

        Returns:
            The appropriate ExitCode for the result.
        """
        cancel = cancel or asyncio.Event()
        self._deadline = asyncio.get_running_loop().time() + self._timeout
        self._output.header(self._mode)
        try:
            handler = getattr(self, f"_run_{self._mode}", None)
            if handler is None:
                raise UsageError(f"Unknown mode: {self._mode}")
            return await handler(cancel)
        except OperationCancelledError as exc:
            self._output.error(str(exc))
            return ExitCode.CANCELLED
        except UsageError as exc:
            self._output.error(str(exc))
            return ExitCode.USAGE
        except DbusPermissionError as exc:
            self._output.error(str(exc))
            return ExitCode.DBUS_PERMISSION
        except ConnMgrError as exc:
            self._output.error(str(exc))
            return ExitCode.FAILED
        except Exception as exc:
            self._output.error(f"Unexpected error: {exc}")
            logger.exception("Unexpected error")
            return ExitCode.FAILED
        finally:
            await self._session.close()

    async def _run_scan(self, cancel: asyncio.Event) -> ExitCode:
        devices = await self._scan(cancel)
        if not devices:
            self._output.result("no SPP devices found")
        return ExitCode.OK

    async def _run_start(self, cancel: asyncio.Event) -> ExitCode:
        await self._start_server()
        self._output.verbose("Idling until timeout; check with 'sdptool browse local'")
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self._remaining())
        except asyncio.TimeoutError:
            pass
        self._output.result("server profile was registered")
        return ExitCode.OK

    async def _run_server(self, cancel: asyncio.Event) -> ExitCode:
        await self._start_server()
        self._output.verbose(f"Waiting for a connection ({self._remaining():.0f}s)")
        fd, peer = await self._session.accept(timeout=self._remaining(), cancel=cancel)
        self._output.field("Peer", f"{peer.path} MAC={peer.address or ''} "
                                   f"Name={peer.name or ''} Alias={peer.alias or ''}")
        self._output.field("FD", str(fd))
        os.close(fd)
        self._output.result("connection accepted")
        return ExitCode.OK

    async def _run_connect(self, cancel: asyncio.Event) -> ExitCode:
        if self._device_path:
            device = Device(path=self._device_path)
        else:
            # Half the deadline is left for choosing and connecting
            devices = await self._scan(cancel, window=self._remaining() / 2)
            if not devices:
                self._output.result("no SPP devices found")
                return ExitCode.OK
            self._output.prompt("Choose index: ")
            index = await self._prompt_index(len(devices), cancel)
            device = devices[index]
        self._output.field("Device", device.path)
        fd = await self._session.connect(device, timeout=self._remaining(), cancel=cancel)
        self._output.field("FD", str(fd))
        os.close(fd)
        self._output.result("connected")
        return ExitCode.OK

    async def _start_server(self) -> None:
        await self._session.start_server(ServerOptions(service_name=self._service_name))
        self._output.field(
            "Service", f"{self._service_name} (channel {DEFAULT_RFCOMM_CHANNEL})"
        )

    async def _scan(
        self, cancel: asyncio.Event, window: float | None = None
    ) -> list[Device]:
        window = self._remaining() if window is None else window
        self._output.verbose(f"Scanning for {window:.0f}s")
        devices = await self._session.scan_spp(timeout=window, cancel=cancel)
        for index, device in enumerate(devices):
            self._output.device(index, device)
        return devices

    def _remaining(self) -> float:
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    async def _prompt_index(self, count: int, cancel: asyncio.Event) -> int:
        reader = asyncio.ensure_future(self._read_index(count))
        stopper = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {reader, stopper},
                timeout=self._remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (reader, stopper):
                if not waiter.done():
                    waiter.cancel()
        if reader in done:
            return reader.result()
        reason = "cancelled" if stopper in done else "timeout"
        raise OperationCancelledError(f"device selection canceled: {reason}", reason)

    async def _read_index(self, count: int) -> int:
        while True:
            line = await self._read_line()
            if not line:
                raise UsageError("No device index given: stdin closed")
            line = line.strip()
            if line.isdigit() and int(line) < count:
                return int(line)
            self._output.prompt(f"enter 0..{count - 1}: ")

    async def _read_line(self) -> str:
        """Reads one line from stdin without blocking the event loop."""
        stdin = self._stdin or sys.stdin
        loop = asyncio.get_running_loop()
        line: asyncio.Future[str] = loop.create_future()

        def on_readable() -> None:
            if not line.done():
                line.set_result(stdin.readline())

        loop.add_reader(stdin.fileno(), on_readable)
        try:
            return await line
        finally:
            loop.remove_reader(stdin.fileno())
