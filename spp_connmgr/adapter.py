"""Bluetooth adapter discovery control via D-Bus.

Discovery is advisory: every adapter gets a StartDiscovery and a
StopDiscovery, and a failure on one adapter is logged and skipped.
"""

import logging
from typing import Any

from .bus import BusConnection
from .constants import ADAPTER_INTERFACE

logger = logging.getLogger(__name__)


class AdapterManager:
    """Starts and stops discovery on the BlueZ adapters.

    Args:
        bus_conn: The session's D-Bus connection.
    """

    def __init__(self, bus_conn: BusConnection) -> None:
        self._bus_conn = bus_conn

    @staticmethod
    def list_adapters(managed_objects: dict[str, dict[str, Any]]) -> list[str]:
        """Returns the paths of all objects exposing Adapter1.

        Args:
            managed_objects: Result of GetManagedObjects.
        """
        return sorted(
            path
            for path, interfaces in managed_objects.items()
            if ADAPTER_INTERFACE in interfaces
        )

    async def start_discovery(self, adapters: list[str]) -> None:
        for path in adapters:
            try:
                await self._bus_conn.call(path, ADAPTER_INTERFACE, "StartDiscovery")
                logger.debug("Discovery started on %s", path)
            except Exception as exc:
                # InProgress when another client is already scanning
                logger.debug("StartDiscovery failed on %s: %s", path, exc)

    async def stop_discovery(self, adapters: list[str]) -> None:
        for path in adapters:
            try:
                await self._bus_conn.call(path, ADAPTER_INTERFACE, "StopDiscovery")
                logger.debug("Discovery stopped on %s", path)
            except Exception as exc:
                # StopDiscovery may fail if discovery was already stopped
                logger.debug("StopDiscovery failed on %s: %s", path, exc)
