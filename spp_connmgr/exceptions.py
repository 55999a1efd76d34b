"""Custom exceptions for spp-connmgr.

Three families, so callers can tell a misuse of the session apart from
a refusal by BlueZ and from giving up on a wait:

- UsageError: precondition violations, detected before any D-Bus call.
- DaemonError: a BlueZ or D-Bus call failed. The original DBusError is
  chained as ``__cause__``.
- OperationCancelledError: a timeout, cancel event or close() ended a
  wait for a connection or a scan.
"""


class ConnMgrError(Exception):
    """Base exception for all spp-connmgr errors."""


class UsageError(ConnMgrError):
    """An operation was called in a state that does not allow it."""


class SessionClosedError(UsageError):
    """The session has been closed; no further operations are possible."""


class RoleConflictError(UsageError):
    """A server operation on a client session, or vice versa."""


class AlreadyUsedError(UsageError):
    """A one-shot operation was called a second time."""


class NotStartedError(UsageError):
    """accept() was called without a registered server profile."""


class DaemonError(ConnMgrError):
    """BlueZ or the D-Bus daemon failed a request."""


class DbusPermissionError(DaemonError):
    """Insufficient permissions to access D-Bus system bus or BlueZ.

    Maps to ExitCode.DBUS_PERMISSION (4).
    """


class RegistrationError(DaemonError):
    """The profile could not be exported or registered with BlueZ.

    Typical causes are the RFCOMM channel being bound by another
    profile or a missing permission for RegisterProfile.
    """


class PairingError(DaemonError):
    """Device1.Pair failed: rejected, timed out, or no agent answered."""


class ConnectProfileError(DaemonError):
    """Device1.ConnectProfile failed: service absent or peer unreachable."""


class DiscoveryError(DaemonError):
    """The object registry could not be read or subscribed to."""


class OperationCancelledError(ConnMgrError):
    """A wait ended without a result.

    Attributes:
        reason: One of 'timeout', 'cancelled' or 'closed'.
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason
