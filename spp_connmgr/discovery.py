"""SPP device discovery via D-Bus.

Combines a GetManagedObjects snapshot with the InterfacesAdded signal:
BlueZ announces devices found by radio discovery asynchronously, so a
single snapshot would miss anything that shows up during the scan
window. Results are keyed by object path; a later announcement for the
same path replaces the earlier entry.
"""

import logging
from typing import Any

from dbus_fast.errors import DBusError

from .adapter import AdapterManager
from .bus import BusConnection
from .device import Device, device_from_interfaces
from .exceptions import DiscoveryError

logger = logging.getLogger(__name__)


class Discovery:
    """Collects SPP-capable devices for as long as the context is open.

    The caller decides how long to scan: enter the context, wait for a
    timeout or cancellation, then read devices().

    Example:
        async with Discovery(bus_conn) as discovery:
            await asyncio.sleep(10)
        devices = discovery.devices()

    Args:
        bus_conn: The session's D-Bus connection.
    """

    def __init__(self, bus_conn: BusConnection) -> None:
        self._bus_conn = bus_conn
        self._adapters = AdapterManager(bus_conn)
        self._adapter_paths: list[str] = []
        self._devices: dict[str, Device] = {}
        self._subscribed = False

    async def __aenter__(self) -> "Discovery":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def start(self) -> None:
        """Subscribes to InterfacesAdded, takes the snapshot, starts discovery.

        The subscription is taken first so that no device announced
        while the snapshot is in flight is lost. Whatever was set up is
        torn down again if start() fails or is cancelled.

        Raises:
            DiscoveryError: If the subscription or the snapshot fails.
        """
        try:
            await self._bus_conn.add_interfaces_added_handler(self._on_interfaces_added)
            self._subscribed = True
            managed_objects = await self._bus_conn.get_managed_objects()
            for path, interfaces in managed_objects.items():
                self._merge(path, interfaces)
            logger.debug("Snapshot: %d SPP device(s)", len(self._devices))

            self._adapter_paths = self._adapters.list_adapters(managed_objects)
            await self._adapters.start_discovery(self._adapter_paths)
        except DBusError as exc:
            await self.stop()
            raise DiscoveryError(f"Cannot read BlueZ objects: {exc.text}") from exc
        except BaseException:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stops discovery on every adapter and unsubscribes. Best-effort."""
        await self._adapters.stop_discovery(self._adapter_paths)
        self._adapter_paths = []
        if self._subscribed:
            self._subscribed = False
            try:
                self._bus_conn.remove_interfaces_added_handler(self._on_interfaces_added)
            except Exception as exc:
                logger.debug("InterfacesAdded unsubscribe failed: %s", exc)

    def devices(self) -> list[Device]:
        """Returns the devices collected so far, in no particular order."""
        return list(self._devices.values())

    def _on_interfaces_added(
        self,
        object_path: str,
        interfaces_and_properties: dict[str, dict[str, Any]],
    ) -> None:
        """Signal handler for InterfacesAdded."""
        if self._merge(object_path, interfaces_and_properties):
            logger.debug("SPP device appeared: %s", object_path)

    def _merge(self, path: str, interfaces: dict[str, dict[str, Any]]) -> bool:
        device = device_from_interfaces(path, interfaces)
        if device is None:
            return False
        self._devices[device.path] = device
        return True
