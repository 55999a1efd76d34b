"""Bluetooth device model and device-level operations via D-Bus.

Device is the value type handed to callers by discovery and accept.
RemoteDevice wraps the Device1 calls made while connecting: paired
check, pairing, ConnectProfile, and property lookup for peer details.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from dbus_fast.errors import DBusError

from .bus import BusConnection, unwrap
from .constants import DEVICE_INTERFACE, SPP_UUID
from .exceptions import ConnectProfileError, PairingError

logger = logging.getLogger(__name__)

_DEVICE_PATH_MARKER = "/dev_"


def mac_from_path(path: str) -> str | None:
    """Extracts the Bluetooth address encoded in a BlueZ device path.

    Args:
        path: D-Bus path (e.g. '/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF').

    Returns:
        The address (e.g. 'AA:BB:CC:DD:EE:FF'), or None if the path
        does not name a device.
    """
    idx = path.rfind(_DEVICE_PATH_MARKER)
    if idx < 0:
        return None
    return path[idx + len(_DEVICE_PATH_MARKER):].replace("_", ":") or None


def contains_uuid(uuids: list[str], target: str) -> bool:
    target = target.lower()
    return any(uuid.lower() == target for uuid in uuids)


@dataclass(frozen=True)
class Device:
    """A Bluetooth device as known to BlueZ.

    Only ``path`` identifies the device; everything else is display
    metadata that may be missing.

    Attributes:
        path: BlueZ Device1 object path.
        address: Bluetooth device address.
        name: Device1.Name.
        alias: Device1.Alias.
        service_name: SDP service name, if known.
    """

    path: str
    address: str | None = None
    name: str | None = None
    alias: str | None = None
    service_name: str | None = None

    @classmethod
    def from_path(cls, path: str) -> "Device":
        return cls(path=path, address=mac_from_path(path))

    @classmethod
    def from_properties(cls, path: str, props: dict[str, Any]) -> "Device":
        """Builds a Device from a Device1 property map.

        Args:
            path: The device object path.
            props: Device1 properties; values may still be Variants.

        Returns:
            A Device with whatever metadata the map carried.
        """

        def text(key: str) -> str | None:
            value = unwrap(props.get(key))
            return value if isinstance(value, str) and value else None

        return cls(
            path=path,
            address=text("Address") or mac_from_path(path),
            name=text("Name"),
            alias=text("Alias"),
        )


def device_from_interfaces(
    path: str, interfaces: dict[str, dict[str, Any]]
) -> Device | None:
    """Returns a Device if the object is a device advertising SPP.

    Args:
        path: Object path from GetManagedObjects or InterfacesAdded.
        interfaces: Interface name -> property map for that object.

    Returns:
        The Device, or None if the object has no Device1 interface or
        its UUIDs do not include the Serial Port Profile.
    """
    props = interfaces.get(DEVICE_INTERFACE)
    if props is None or not path:
        return None
    uuids = unwrap(props.get("UUIDs"))
    if not uuids or not contains_uuid(list(uuids), SPP_UUID):
        return None
    return Device.from_properties(path, props)


class RemoteDevice:
    """Device1 operations on a single remote device.

    Args:
        bus_conn: The session's D-Bus connection.
        path: The device object path.
    """

    def __init__(self, bus_conn: BusConnection, path: str) -> None:
        self._bus_conn = bus_conn
        self._path = path

    async def is_paired(self) -> bool | None:
        """Reads the Device1.Paired property.

        Returns:
            The paired state, or None if BlueZ did not answer. Callers
            skip pairing in that case and let ConnectProfile decide.
        """
        try:
            paired = await self._bus_conn.get_property(
                self._path, DEVICE_INTERFACE, "Paired"
            )
        except DBusError as exc:
            logger.debug("Paired read failed for %s: %s", self._path, exc.text)
            return None
        return bool(paired)

    async def pair(self) -> None:
        """Pairs with the device.

        Consent prompts are answered by an agent registered separately
        with BlueZ; without one, BlueZ fails the call.

        Raises:
            PairingError: If BlueZ reports a pairing failure.
        """
        logger.debug("Pairing with %s", self._path)
        try:
            await self._bus_conn.call(self._path, DEVICE_INTERFACE, "Pair")
        except DBusError as exc:
            raise PairingError(f"Pairing failed for {self._path}: {exc.text}") from exc
        except asyncio.CancelledError:
            await self._cancel_pairing()
            raise
        logger.info("Paired with %s", self._path)

    async def _cancel_pairing(self) -> None:
        # BlueZ keeps pairing after the caller gives up unless told otherwise
        try:
            await self._bus_conn.call(self._path, DEVICE_INTERFACE, "CancelPairing")
        except Exception as exc:
            logger.debug("CancelPairing failed for %s: %s", self._path, exc)

    async def connect_profile(self, uuid: str = SPP_UUID) -> None:
        """Asks BlueZ to connect the given profile on the device.

        Raises:
            ConnectProfileError: If the service is absent or the peer
                cannot be reached.
        """
        logger.debug("ConnectProfile %s on %s", uuid, self._path)
        try:
            await self._bus_conn.call(
                self._path, DEVICE_INTERFACE, "ConnectProfile", "s", [uuid]
            )
        except DBusError as exc:
            raise ConnectProfileError(
                f"ConnectProfile failed for {self._path}: {exc.text}"
            ) from exc

    async def describe(self) -> Device:
        """Returns the device with the metadata BlueZ currently has.

        Falls back to what the object path alone provides if the
        properties cannot be read.
        """
        try:
            props = await self._bus_conn.get_all_properties(self._path, DEVICE_INTERFACE)
        except DBusError as exc:
            logger.debug("Peer lookup failed for %s: %s", self._path, exc.text)
            return Device.from_path(self._path)
        return Device.from_properties(self._path, props)
