"""spp-connmgr — Bluetooth Serial Port Profile connection manager.

Prepares exactly one RFCOMM connection through BlueZ over D-Bus and
hands the connected socket to the caller as a file descriptor.
"""

from .constants import DEFAULT_RFCOMM_CHANNEL, SPP_UUID, VERSION
from .device import Device
from .session import Role, ServerOptions, Session

__version__ = VERSION

__all__ = [
    "DEFAULT_RFCOMM_CHANNEL",
    "SPP_UUID",
    "Device",
    "Role",
    "ServerOptions",
    "Session",
]
