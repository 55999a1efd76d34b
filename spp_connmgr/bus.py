"""D-Bus system bus connection manager.

Provides a single connection to the D-Bus system bus owned by one
session. Wraps the direct Message calls, property reads, object exports
and the ObjectManager signal subscription used by the other components.
"""

import logging
from collections.abc import Callable
from typing import Any

from dbus_fast import BusType, Message, MessageType, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface

from .constants import (
    BLUEZ_ROOT_PATH,
    BLUEZ_SERVICE,
    OBJECT_MANAGER_INTERFACE,
    PROPERTIES_INTERFACE,
)
from .exceptions import DbusPermissionError

logger = logging.getLogger(__name__)

InterfacesAddedHandler = Callable[[str, dict[str, dict[str, Any]]], None]


def unwrap(value: Any) -> Any:
    """Returns the plain Python value of a (possibly nested) Variant."""
    while isinstance(value, Variant):
        value = value.value
    return value


class BusConnection:
    """Manages the D-Bus system bus connection lifecycle.

    Unix fd passing is negotiated on connect, since BlueZ hands the
    RFCOMM socket to Profile1.NewConnection as a file descriptor.

    Example:
        bus_conn = BusConnection()
        await bus_conn.connect()
        objects = await bus_conn.get_managed_objects()
        await bus_conn.disconnect()
    """

    def __init__(self) -> None:
        self._bus: MessageBus | None = None
        self._object_manager = None

    @property
    def bus(self) -> MessageBus:
        """Returns the active D-Bus connection.

        Raises:
            RuntimeError: If connect() has not been called.
        """
        if self._bus is None:
            raise RuntimeError("D-Bus connection not established. Call connect() first.")
        return self._bus

    @property
    def is_connected(self) -> bool:
        return self._bus is not None

    async def connect(self) -> None:
        """Connects to the D-Bus system bus.

        Raises:
            DbusPermissionError: If the connection is refused or fails.
        """
        try:
            logger.debug("Connecting to D-Bus system bus")
            self._bus = await MessageBus(
                bus_type=BusType.SYSTEM, negotiate_unix_fd=True
            ).connect()
            logger.debug("D-Bus system bus connected")
        except PermissionError as exc:
            raise DbusPermissionError(
                "Cannot connect to D-Bus system bus. "
                "Are you running as root or in the bluetooth group?"
            ) from exc
        except Exception as exc:
            raise DbusPermissionError(
                f"Failed to connect to D-Bus system bus: {exc}"
            ) from exc

    async def disconnect(self) -> None:
        """Disconnects from the D-Bus system bus."""
        if self._bus is not None:
            logger.debug("Disconnecting from D-Bus system bus")
            self._bus.disconnect()
            self._bus = None
            self._object_manager = None

    async def call(
        self,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list[Any] | None = None,
    ) -> list[Any]:
        """Calls a BlueZ method with a direct D-Bus message.

        Args:
            path: Object path of the BlueZ object.
            interface: Interface that defines the member.
            member: Method name.
            signature: D-Bus signature of ``body``.
            body: Method arguments.

        Returns:
            The reply body.

        Raises:
            DBusError: If BlueZ answers with an error reply.
        """
        logger.debug("Calling %s.%s on %s", interface, member, path)
        reply = await self.bus.call(
            Message(
                destination=BLUEZ_SERVICE,
                path=path,
                interface=interface,
                member=member,
                signature=signature,
                body=body or [],
            )
        )
        if reply.message_type == MessageType.ERROR:
            text = reply.body[0] if reply.body else f"{member} failed"
            raise DBusError(reply.error_name, text)
        return reply.body

    async def get_property(self, path: str, interface: str, name: str) -> Any:
        """Reads one property through org.freedesktop.DBus.Properties."""
        body = await self.call(
            path, PROPERTIES_INTERFACE, "Get", "ss", [interface, name]
        )
        return unwrap(body[0])

    async def get_all_properties(self, path: str, interface: str) -> dict[str, Any]:
        """Reads all properties of an interface, with Variants unwrapped."""
        body = await self.call(path, PROPERTIES_INTERFACE, "GetAll", "s", [interface])
        return {key: unwrap(value) for key, value in body[0].items()}

    async def get_managed_objects(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Returns the BlueZ object registry: path -> interface -> properties."""
        body = await self.call(
            BLUEZ_ROOT_PATH, OBJECT_MANAGER_INTERFACE, "GetManagedObjects"
        )
        return body[0]

    def export(self, path: str, interface: ServiceInterface) -> None:
        self.bus.export(path, interface)

    def unexport(self, path: str, interface: ServiceInterface | None = None) -> None:
        self.bus.unexport(path, interface)

    async def add_interfaces_added_handler(self, handler: InterfacesAddedHandler) -> None:
        """Subscribes ``handler`` to ObjectManager.InterfacesAdded on the BlueZ root.

        Args:
            handler: Called with (object_path, interfaces_and_properties).
        """
        if self._object_manager is None:
            introspection = await self.bus.introspect(BLUEZ_SERVICE, BLUEZ_ROOT_PATH)
            root_proxy = self.bus.get_proxy_object(
                BLUEZ_SERVICE, BLUEZ_ROOT_PATH, introspection
            )
            self._object_manager = root_proxy.get_interface(OBJECT_MANAGER_INTERFACE)
        self._object_manager.on_interfaces_added(handler)

    def remove_interfaces_added_handler(self, handler: InterfacesAddedHandler) -> None:
        if self._object_manager is not None:
            self._object_manager.off_interfaces_added(handler)
