"""Connection-lifecycle session for one SPP connection.

A Session is single-role and single-use: it either registers a server
profile and accepts one connection, or registers a client profile and
connects to one device. Scanning is allowed in any state until close.

Except for close(), the public coroutines must not run concurrently on
the same session; callers serialize them. close() may be called at any
time, from any task, any number of times. It wakes up a pending accept,
connect or scan, which then raise OperationCancelledError.

File descriptors returned by accept() and connect() belong to the
caller, who must close them. The session never touches them again.
"""

import asyncio
import enum
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .bus import BusConnection
from .constants import PROFILE_PATH_PREFIX, SPP_UUID
from .device import Device, RemoteDevice
from .discovery import Discovery
from .exceptions import (
    AlreadyUsedError,
    NotStartedError,
    OperationCancelledError,
    RoleConflictError,
    SessionClosedError,
    UsageError,
)
from .profile import Delivery, ProfileEndpoint, SppProfile, close_fd

logger = logging.getLogger(__name__)

CleanupAction = Callable[[], Awaitable[None]]


class Role(enum.Enum):
    NONE = "none"
    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class ServerOptions:
    """Server profile registration options.

    Attributes:
        service_name: SDP service name announced for the profile. Required.
    """

    service_name: str


class Session:
    """Manages one SPP connection through BlueZ.

    Args:
        bus_conn: D-Bus connection to use. A new system bus connection
            is created when omitted. The bus is connected lazily on the
            first operation that needs it, and disconnected on close if
            the session connected it.
    """

    def __init__(self, bus_conn: BusConnection | None = None) -> None:
        self._bus_conn = bus_conn or BusConnection()
        self._lock = asyncio.Lock()
        self._closed = False
        self._closed_event = asyncio.Event()
        self._role = Role.NONE
        self._endpoint: ProfileEndpoint | None = None
        self._accept_used = False
        self._connect_used = False
        self._cleanup: list[CleanupAction] = []
        self._token = uuid.uuid4().hex[:12]
        self._path_ids = itertools.count(1)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def role(self) -> Role:
        return self._role

    @property
    def closed(self) -> bool:
        return self._closed

    async def start_server(self, options: ServerOptions) -> None:
        """Registers the SPP server profile on RFCOMM channel 22.

        Follow with accept() to wait for exactly one incoming connection.

        Args:
            options: Registration options; service_name must be non-empty.

        Raises:
            SessionClosedError: If the session is closed.
            RoleConflictError: If the session has been used as a client.
            AlreadyUsedError: If the server is already started.
            UsageError: If options.service_name is empty.
            DbusPermissionError: If the system bus is unreachable.
            RegistrationError: If BlueZ refuses the profile, e.g. because
                the channel is already bound.
        """
        async with self._lock:
            self._check_open()
            if self._role is Role.CLIENT or self._connect_used:
                raise RoleConflictError("Session already used as client")
            if self._role is Role.SERVER:
                raise AlreadyUsedError("Server already started")
            if not options.service_name:
                raise UsageError("ServerOptions.service_name is required")
            bus_conn = await self._ensure_bus()
            endpoint = self._new_endpoint(Role.SERVER)
            # Claimed before the RPC so a concurrent connect() sees the role
            self._role = Role.SERVER
            self._endpoint = endpoint

        try:
            await endpoint.register(bus_conn, options.service_name)
        except BaseException:
            async with self._lock:
                if self._endpoint is endpoint:
                    self._role = Role.NONE
                    self._endpoint = None
            raise
        await self._push_cleanup(lambda: endpoint.unregister(bus_conn))
        logger.info("SPP server '%s' started", options.service_name)

    async def accept(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> tuple[int, Device]:
        """Waits for the one incoming connection of a started server.

        accept() is one-shot: it cannot be called again, even after a
        timeout or cancellation.

        Args:
            timeout: Seconds to wait, or None to wait without limit.
            cancel: Event that ends the wait when set.

        Returns:
            The connected socket fd, owned by the caller, and the peer.
            Peer metadata is best-effort; only its path is guaranteed.

        Raises:
            SessionClosedError: If the session is closed.
            NotStartedError: If start_server() has not succeeded.
            AlreadyUsedError: If accept() was already called.
            OperationCancelledError: On timeout, cancel or close.
        """
        async with self._lock:
            self._check_open()
            endpoint = self._endpoint
            if self._role is not Role.SERVER or endpoint is None or not endpoint.registered:
                raise NotStartedError("Server not started")
            if self._accept_used:
                raise AlreadyUsedError("accept() already used")
            self._accept_used = True
            bus_conn = self._bus_conn

        delivery = await self._wait_for_delivery(endpoint.profile, "accept", timeout, cancel)
        try:
            peer = await RemoteDevice(bus_conn, delivery.device.path).describe()
        except Exception as exc:
            logger.debug("Peer lookup failed: %s", exc)
            peer = delivery.device
        except BaseException:
            close_fd(delivery.fd)
            raise
        logger.info("Accepted connection from %s", peer.address or peer.path)
        return delivery.fd, peer

    async def scan_spp(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[Device]:
        """Discovers devices advertising the Serial Port Profile.

        Returns the devices BlueZ already knows plus those announced
        before the timeout expires or ``cancel`` is set. Scanning
        without either runs until close(), which raises.

        Args:
            timeout: Scan duration in seconds.
            cancel: Event that ends the scan when set.

        Returns:
            The devices found, in no particular order. Each has a path.

        Raises:
            SessionClosedError: If the session is closed.
            DiscoveryError: If the BlueZ object registry cannot be read.
            OperationCancelledError: If the session is closed mid-scan.
        """
        deadline = self._deadline(timeout)
        async with self._lock:
            self._check_open()
            bus_conn = await self._ensure_bus()

        discovery = Discovery(bus_conn)
        try:
            reason = await self._race(discovery.start(), deadline, cancel)
            if reason == "done":
                reason = await self._wait_until_stopped(self._remaining(deadline), cancel)
        finally:
            await discovery.stop()
        if reason == "closed":
            raise OperationCancelledError("Scan canceled: session closed", reason)
        devices = discovery.devices()
        logger.info("Scan finished: %d SPP device(s)", len(devices))
        return devices

    async def connect(
        self,
        device: Device,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> int:
        """Connects to the SPP service of a remote device.

        Registers the client profile on first use, pairs the device if
        it is not paired (an agent must be registered with BlueZ for
        that), asks BlueZ to connect the profile, then waits for the
        socket. connect() is one-shot.

        Args:
            device: The target; only its path is used.
            timeout: Seconds the whole call may take, pairing included,
                or None.
            cancel: Event that ends the wait when set.

        Returns:
            The connected socket fd, owned by the caller.

        Raises:
            UsageError: If device.path is empty.
            SessionClosedError: If the session is closed.
            RoleConflictError: If the session has been used as a server.
            AlreadyUsedError: If connect() was already called.
            RegistrationError: If the client profile cannot be registered.
            PairingError: If pairing fails; ConnectProfile is not attempted.
            ConnectProfileError: If BlueZ cannot connect the profile.
            OperationCancelledError: On timeout, cancel or close.
        """
        if not device.path:
            raise UsageError("Device path is required")
        deadline = self._deadline(timeout)
        async with self._lock:
            self._check_open()
            if self._role is Role.SERVER or self._accept_used:
                raise RoleConflictError("Session already used as server")
            if self._connect_used:
                raise AlreadyUsedError("connect() already used")
            bus_conn = await self._ensure_bus()
            self._connect_used = True
            endpoint = self._endpoint
            if endpoint is None:
                endpoint = self._new_endpoint(Role.CLIENT)
                self._role = Role.CLIENT
                self._endpoint = endpoint

        profile = endpoint.profile
        try:
            reason = await self._race(
                self._request_connection(bus_conn, endpoint, device.path), deadline, cancel
            )
        except BaseException:
            profile.retire()
            raise
        if reason != "done":
            profile.retire()
            raise self._cancelled("connect", reason)

        delivery = await self._wait_for_delivery(
            profile, "connect", self._remaining(deadline), cancel
        )
        logger.info("Connected to %s", device.path)
        return delivery.fd

    async def close(self) -> None:
        """Releases every registered resource, in reverse order.

        Idempotent. Teardown failures are logged and skipped; every
        action runs exactly once.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._closed_event.set()
            actions = self._cleanup
            self._cleanup = []

        logger.debug("Closing session (%d cleanup action(s))", len(actions))
        for action in reversed(actions):
            try:
                await action()
            except Exception as exc:
                logger.debug("Cleanup action failed: %s", exc)

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session closed")

    async def _ensure_bus(self) -> BusConnection:
        # Called with the lock held
        if not self._bus_conn.is_connected:
            await self._bus_conn.connect()
            # First action pushed, so the bus is closed last
            self._cleanup.append(self._bus_conn.disconnect)
        return self._bus_conn

    def _new_endpoint(self, role: Role) -> ProfileEndpoint:
        path = f"{PROFILE_PATH_PREFIX}/s{self._token}/{role.value}{next(self._path_ids)}"
        return ProfileEndpoint(role.value, path)

    async def _push_cleanup(self, action: CleanupAction) -> None:
        """Adds a teardown action, or runs it now if close() already ran."""
        async with self._lock:
            if not self._closed:
                self._cleanup.append(action)
                return
        try:
            await action()
        except Exception as exc:
            logger.debug("Late cleanup action failed: %s", exc)
        raise SessionClosedError("Session closed")

    async def _request_connection(
        self, bus_conn: BusConnection, endpoint: ProfileEndpoint, device_path: str
    ) -> None:
        if not endpoint.registered:
            await endpoint.register(bus_conn)
            await self._push_cleanup(lambda: endpoint.unregister(bus_conn))
        remote = RemoteDevice(bus_conn, device_path)
        if await remote.is_paired() is False:
            await remote.pair()
        await remote.connect_profile(SPP_UUID)

    async def _wait_for_delivery(
        self,
        profile: SppProfile,
        operation: str,
        timeout: float | None,
        cancel: asyncio.Event | None,
    ) -> Delivery:
        """Waits on the profile's queue, racing timeout, cancel and close.

        If the wait ends without a delivery the profile is retired, so
        a connection arriving later is closed instead of leaked.
        """
        getter = asyncio.ensure_future(profile.queue.get())
        try:
            reason = await self._wait_until_stopped(timeout, cancel, getter)
        except BaseException:
            if getter.done() and not getter.cancelled():
                # Taken but never returned: give it back for retire() to close
                profile.queue.put_nowait(getter.result())
            profile.retire()
            raise
        if reason == "done":
            return getter.result()
        profile.retire()
        raise self._cancelled(operation, reason)

    async def _race(
        self,
        coro: Awaitable[None],
        deadline: float | None,
        cancel: asyncio.Event | None,
    ) -> str:
        """Runs daemon calls until they finish or the wait is stopped.

        The calls are cancelled when timeout, cancel or close wins.
        Errors raised by the calls propagate.

        Returns:
            'done' when the calls finished, otherwise the stop reason.
        """
        task = asyncio.ensure_future(coro)
        try:
            reason = await self._wait_until_stopped(self._remaining(deadline), cancel, task)
        finally:
            if not task.done():
                task.cancel()
            # Let the calls unwind before the caller cleans up after them
            await asyncio.gather(task, return_exceptions=True)
        if reason == "done":
            task.result()
        return reason

    @staticmethod
    def _cancelled(operation: str, reason: str) -> OperationCancelledError:
        exc = OperationCancelledError(f"{operation} canceled: {reason}", reason)
        exc.__cause__ = (
            asyncio.TimeoutError() if reason == "timeout" else asyncio.CancelledError()
        )
        return exc

    @staticmethod
    def _deadline(timeout: float | None) -> float | None:
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    @staticmethod
    def _remaining(deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _wait_until_stopped(
        self,
        timeout: float | None,
        cancel: asyncio.Event | None,
        getter: "asyncio.Future | None" = None,
    ) -> str:
        """Waits for the first of getter, cancel, close and timeout.

        Returns:
            'done', 'cancelled', 'closed' or 'timeout'. A completed
            getter wins over anything that completed at the same time.
        """
        waiters = {asyncio.ensure_future(self._closed_event.wait()): "closed"}
        if cancel is not None:
            waiters[asyncio.ensure_future(cancel.wait())] = "cancelled"
        if getter is not None:
            waiters[getter] = "done"
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if not done:
            return "timeout"
        if getter is not None and getter in done:
            return "done"
        return next(waiters[waiter] for waiter in waiters if waiter in done)
