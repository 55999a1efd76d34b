"""CLI output for spp-connmgr.

Session code never prints; the orchestrator reports through this
formatter so that stdout carries the run's results and stderr the
error line.
"""

import logging
import sys

from .constants import TOOL_NAME, VERSION
from .device import Device

logger = logging.getLogger(__name__)


class OutputFormatter:
    """Prints labeled result lines.

    Example run in server mode:
        spp-connmgr v1.0.0
        Mode:     server
        Service:  MyChatService (channel 22)
        Peer:     /org/bluez/hci0/dev_AA_BB_CC_DD_EE_01 MAC=AA:BB:CC:DD:EE:01 ...
        FD:       7
        Result:   ✅ connection accepted

    Args:
        verbose: Also print progress notes.
    """

    LABEL_WIDTH: int = 10

    def __init__(self, verbose: bool = False) -> None:
        self._verbose = verbose

    def header(self, mode: str) -> None:
        print(f"{TOOL_NAME} v{VERSION}")
        self.field("Mode", mode)

    def field(self, label: str, value: str) -> None:
        print(f"{label}:".ljust(self.LABEL_WIDTH) + value)

    def device(self, index: int, device: Device) -> None:
        """Prints one numbered scan result, the index used by the prompt."""
        print(
            f"[{index}] Path={device.path} MAC={device.address or ''} "
            f"Name={device.name or ''} Alias={device.alias or ''}"
        )

    def result(self, message: str) -> None:
        self.field("Result", f"✅ {message}")

    def error(self, message: str) -> None:
        print("Error:".ljust(self.LABEL_WIDTH) + message, file=sys.stderr)

    def verbose(self, message: str) -> None:
        """Prints a progress note in verbose mode; always logged at DEBUG."""
        logger.debug(message)
        if self._verbose:
            print(f"  [{message}]")

    def prompt(self, message: str) -> None:
        print(message, end="", flush=True)
