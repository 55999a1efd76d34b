"""Tests for the CLI orchestrator and argument parsing."""

import asyncio
import os

import pytest
from dbus_fast.errors import DBusError

from mocks import PEER_MAC, FakeBusConnection, device_path, is_open, open_fd
from spp_connmgr.__main__ import parse_args
from spp_connmgr.app import SppConnectApp
from spp_connmgr.constants import DEFAULT_SERVICE_NAME, DEFAULT_TIMEOUT, ExitCode
from spp_connmgr.exceptions import DbusPermissionError
from spp_connmgr.session import Session


def make_app(bus: FakeBusConnection, mode: str, **kwargs) -> SppConnectApp:
    kwargs.setdefault("service_name", "MyChatService")
    kwargs.setdefault("timeout", 5.0)
    return SppConnectApp(mode=mode, session=Session(bus), **kwargs)


def test_parse_args_defaults() -> None:
    args = parse_args([])

    assert args.mode == "scan"
    assert args.name == DEFAULT_SERVICE_NAME
    assert args.device == ""
    assert args.timeout == DEFAULT_TIMEOUT
    assert not args.verbose


def test_parse_args_connect() -> None:
    args = parse_args(["connect", "--device", device_path(PEER_MAC), "--timeout", "30"])

    assert args.mode == "connect"
    assert args.device == device_path(PEER_MAC)
    assert args.timeout == 30.0


def test_parse_args_rejects_unknown_mode() -> None:
    with pytest.raises(SystemExit):
        parse_args(["listen"])


@pytest.mark.asyncio
async def test_scan_mode_lists_devices(
    bus: FakeBusConnection, capsys: pytest.CaptureFixture[str]
) -> None:
    app = make_app(bus, "scan", timeout=0.01)

    assert await app.run() == ExitCode.OK

    out = capsys.readouterr().out
    assert f"[0] Path={device_path(PEER_MAC)} MAC={PEER_MAC}" in out
    assert bus.disconnect_count == 1


@pytest.mark.asyncio
async def test_server_mode_accepts_and_closes_fd(bus: FakeBusConnection) -> None:
    app = make_app(bus, "server")
    fd = open_fd()

    task = asyncio.create_task(app.run())
    while not bus.profiles:
        await asyncio.sleep(0)
    bus.profile_for("server").deliver(device_path(PEER_MAC), fd, {})

    assert await task == ExitCode.OK
    assert not is_open(fd)
    assert bus.profiles == {}


@pytest.mark.asyncio
async def test_start_mode_idles_until_cancelled(bus: FakeBusConnection) -> None:
    app = make_app(bus, "start", timeout=30.0)
    cancel = asyncio.Event()

    task = asyncio.create_task(app.run(cancel))
    while not bus.profiles:
        await asyncio.sleep(0)
    cancel.set()

    assert await task == ExitCode.OK
    assert bus.profiles == {}


@pytest.mark.asyncio
async def test_connect_mode_with_device(bus: FakeBusConnection) -> None:
    app = make_app(bus, "connect", device_path=device_path(PEER_MAC))

    assert await app.run() == ExitCode.OK
    assert not is_open(bus.delivered_fds[0])


@pytest.mark.asyncio
async def test_pairing_failure_exit_code(bus: FakeBusConnection) -> None:
    bus.failures["Pair"] = DBusError("org.bluez.Error.AuthenticationFailed", "denied")
    app = make_app(bus, "connect", device_path=device_path(PEER_MAC))

    assert await app.run() == ExitCode.FAILED


@pytest.mark.asyncio
async def test_server_timeout_exit_code(bus: FakeBusConnection) -> None:
    app = make_app(bus, "server", timeout=0.01)

    assert await app.run() == ExitCode.CANCELLED


@pytest.mark.asyncio
async def test_empty_service_name_is_usage_error(bus: FakeBusConnection) -> None:
    app = make_app(bus, "server", service_name="")

    assert await app.run() == ExitCode.USAGE


@pytest.mark.asyncio
async def test_bus_permission_exit_code(
    bus: FakeBusConnection, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def refuse() -> None:
        raise DbusPermissionError("Cannot connect to D-Bus system bus.")

    monkeypatch.setattr(bus, "connect", refuse)
    app = make_app(bus, "scan")

    assert await app.run() == ExitCode.DBUS_PERMISSION


@pytest.fixture
def stdin_pipe():
    """A pipe standing in for the terminal: yields (stdin, writer)."""
    read_fd, write_fd = os.pipe()
    stdin = os.fdopen(read_fd)
    writer = os.fdopen(write_fd, "w")
    yield stdin, writer
    stdin.close()
    writer.close()


@pytest.mark.asyncio
async def test_connect_mode_prompts_for_index(
    bus: FakeBusConnection, stdin_pipe, capsys: pytest.CaptureFixture[str]
) -> None:
    stdin, writer = stdin_pipe
    writer.write("0\n")
    writer.flush()
    app = make_app(bus, "connect", timeout=0.4, stdin=stdin)

    assert await app.run() == ExitCode.OK

    out = capsys.readouterr().out
    assert "Choose index: " in out
    assert f"Device:   {device_path(PEER_MAC)}" in out
    assert "ConnectProfile" in bus.members()


@pytest.mark.asyncio
async def test_closed_stdin_at_prompt_is_usage_error(
    bus: FakeBusConnection, stdin_pipe
) -> None:
    stdin, writer = stdin_pipe
    writer.close()
    app = make_app(bus, "connect", timeout=0.4, stdin=stdin)

    assert await app.run() == ExitCode.USAGE
    assert "ConnectProfile" not in bus.members()


@pytest.mark.asyncio
async def test_cancel_at_prompt(bus: FakeBusConnection, stdin_pipe) -> None:
    stdin, _ = stdin_pipe
    app = make_app(bus, "connect", timeout=5.0, stdin=stdin)
    cancel = asyncio.Event()

    task = asyncio.create_task(app.run(cancel))
    while "StartDiscovery" not in bus.members():
        await asyncio.sleep(0)
    cancel.set()

    assert await asyncio.wait_for(task, timeout=1.0) == ExitCode.CANCELLED
    assert "ConnectProfile" not in bus.members()
