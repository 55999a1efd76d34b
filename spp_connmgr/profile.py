"""D-Bus Profile1 handler for RFCOMM Serial Port Profile connections.

Implements the org.bluez.Profile1 interface. BlueZ calls NewConnection
with the connected RFCOMM socket as a Unix file descriptor; the profile
hands it to the waiting accept()/connect() through a single-slot queue.

A profile delivers at most one connection. Any other NewConnection,
including one that arrives after the waiter gave up, has its fd closed
here and is answered with org.bluez.Error.Rejected, so no descriptor is
ever left without an owner.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any

from dbus_fast import Variant
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface, method

from .bus import BusConnection
from .constants import (
    BLUEZ_PATH,
    DEFAULT_RFCOMM_CHANNEL,
    PROFILE_INTERFACE,
    PROFILE_MANAGER_INTERFACE,
    REJECTED_ERROR,
    SPP_UUID,
)
from .device import Device
from .exceptions import RegistrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Delivery:
    """A connection handed over by BlueZ: the socket fd and its peer."""

    fd: int
    device: Device


def close_fd(fd: int) -> None:
    try:
        os.close(fd)
    except OSError as exc:
        logger.debug("Closing fd %d failed: %s", fd, exc)


class SppProfile(ServiceInterface):
    """BlueZ Profile1 implementation delivering one RFCOMM connection.

    Args:
        role: 'server' or 'client', used for logging only.
    """

    def __init__(self, role: str) -> None:
        super().__init__(PROFILE_INTERFACE)
        self.role = role
        self.queue: asyncio.Queue[Delivery] = asyncio.Queue(maxsize=1)
        self._delivered = False
        self._retired = False

    @property
    def delivered(self) -> bool:
        return self._delivered

    @property
    def retired(self) -> bool:
        return self._retired

    @method()
    def Release(self) -> None:  # noqa: N802
        """Called by BlueZ when the profile is unregistered."""
        logger.debug("%s profile released", self.role)

    @method()
    def Cancel(self) -> None:  # noqa: N802
        """Called by BlueZ when a pending request is cancelled."""
        logger.debug("%s profile request cancelled", self.role)

    @method()
    def RequestDisconnection(self, device: "o") -> None:  # noqa: N802
        """Called by BlueZ before a disconnect. Ignored."""
        logger.debug("Disconnection requested for %s", device)

    @method()
    def NewConnection(self, device: "o", fd: "h", fd_properties: "a{sv}") -> None:  # noqa: N802
        """Called by BlueZ with the connected RFCOMM socket.

        Args:
            device: The D-Bus object path of the peer device.
            fd: The socket file descriptor, now owned by this process.
            fd_properties: Profile-specific properties (version, features).
        """
        self.deliver(device, fd, fd_properties)

    def deliver(self, device_path: str, fd: int, properties: dict[str, Any]) -> None:
        """Hands a new connection to the waiter, or closes and rejects it.

        Never blocks: the connection is queued if the single slot is
        free and nothing has been delivered yet.

        Raises:
            DBusError: org.bluez.Error.Rejected when the connection is
                refused. The fd is already closed at that point.
        """
        if self._delivered:
            self._reject(device_path, fd, "already accepted")
        if self._retired:
            self._reject(device_path, fd, "no receiver")
        try:
            self.queue.put_nowait(Delivery(fd=fd, device=Device.from_path(device_path)))
        except asyncio.QueueFull:
            self._reject(device_path, fd, "no receiver")
        self._delivered = True
        logger.info("%s profile: connection from %s (fd %d)", self.role, device_path, fd)

    def retire(self) -> None:
        """Stops accepting deliveries and closes any that was never taken."""
        self._retired = True
        while True:
            try:
                delivery = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            logger.debug("Closing undelivered connection from %s", delivery.device.path)
            close_fd(delivery.fd)

    def _reject(self, device_path: str, fd: int, reason: str) -> None:
        logger.warning(
            "%s profile: rejecting connection from %s (%s)", self.role, device_path, reason
        )
        close_fd(fd)
        raise DBusError(REJECTED_ERROR, reason)


class ProfileEndpoint:
    """An SppProfile exported at a path and registered with ProfileManager1.

    Args:
        role: 'server' or 'client'.
        path: The object path to export the profile at.
    """

    def __init__(self, role: str, path: str) -> None:
        self.role = role
        self.path = path
        self.profile = SppProfile(role)
        self.registered = False

    def options(self, service_name: str | None = None) -> dict[str, Variant]:
        """Returns the RegisterProfile options for this endpoint's role."""
        options = {"Role": Variant("s", self.role)}
        if self.role == "server":
            # BlueZ expects Channel as a uint16
            options["Channel"] = Variant("q", DEFAULT_RFCOMM_CHANNEL)
            options["Name"] = Variant("s", service_name or "")
        return options

    async def register(self, bus_conn: BusConnection, service_name: str | None = None) -> None:
        """Exports the profile and registers it with BlueZ.

        On failure nothing stays exported.

        Raises:
            RegistrationError: If the export or RegisterProfile fails.
        """
        try:
            bus_conn.export(self.path, self.profile)
        except Exception as exc:
            raise RegistrationError(f"Cannot export {self.role} profile: {exc}") from exc
        try:
            await bus_conn.call(
                BLUEZ_PATH,
                PROFILE_MANAGER_INTERFACE,
                "RegisterProfile",
                "osa{sv}",
                [self.path, SPP_UUID, self.options(service_name)],
            )
        except DBusError as exc:
            self._unexport(bus_conn)
            raise RegistrationError(
                f"RegisterProfile({self.role}) failed: {exc.text}"
            ) from exc
        except BaseException:
            self._unexport(bus_conn)
            raise
        self.registered = True
        logger.info("%s profile registered at %s", self.role, self.path)

    async def unregister(self, bus_conn: BusConnection) -> None:
        """Unregisters and unexports the profile. Best-effort.

        The profile is retired either way, so later deliveries are closed.
        """
        self.profile.retire()
        if self.registered:
            self.registered = False
            try:
                await bus_conn.call(
                    BLUEZ_PATH, PROFILE_MANAGER_INTERFACE, "UnregisterProfile", "o", [self.path]
                )
            except Exception as exc:
                logger.debug("UnregisterProfile failed for %s: %s", self.path, exc)
        self._unexport(bus_conn)

    def _unexport(self, bus_conn: BusConnection) -> None:
        try:
            bus_conn.unexport(self.path, self.profile)
        except Exception as exc:
            logger.debug("Unexport failed for %s: %s", self.path, exc)
