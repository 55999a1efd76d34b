"""Constants and configuration for spp-connmgr.

Single source of truth for version, exit codes, D-Bus names and the
Serial Port Profile parameters.
"""

from enum import IntEnum

VERSION: str = "1.0.0"
TOOL_NAME: str = "spp-connmgr"

# D-Bus constants
BLUEZ_SERVICE: str = "org.bluez"
BLUEZ_ROOT_PATH: str = "/"
BLUEZ_PATH: str = "/org/bluez"
ADAPTER_INTERFACE: str = "org.bluez.Adapter1"
DEVICE_INTERFACE: str = "org.bluez.Device1"
PROFILE_INTERFACE: str = "org.bluez.Profile1"
PROFILE_MANAGER_INTERFACE: str = "org.bluez.ProfileManager1"
PROPERTIES_INTERFACE: str = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE: str = "org.freedesktop.DBus.ObjectManager"

# Error name returned to BlueZ when a NewConnection is refused
REJECTED_ERROR: str = "org.bluez.Error.Rejected"

# Serial Port Profile
SPP_UUID: str = "00001101-0000-1000-8000-00805f9b34fb"
DEFAULT_RFCOMM_CHANNEL: int = 22

# Profile objects are exported below this prefix, one subtree per session
PROFILE_PATH_PREFIX: str = "/org/spp_connmgr"

# CLI defaults
DEFAULT_TIMEOUT: float = 15.0
DEFAULT_SERVICE_NAME: str = "MyChatService"


class ExitCode(IntEnum):
    """Process exit codes for the CLI front end.

    Attributes:
        OK: Operation completed.
        FAILED: BlueZ rejected or failed an operation.
        CANCELLED: Timed out or interrupted by the user.
        USAGE: Invalid arguments or session misuse.
        DBUS_PERMISSION: D-Bus system bus not reachable.
    """

    OK = 0
    FAILED = 1
    CANCELLED = 2
    USAGE = 3
    DBUS_PERMISSION = 4
