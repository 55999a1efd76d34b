"""Pytest configuration for spp-connmgr tests."""

import pytest

from mocks import PEER_MAC, FakeBusConnection, device_interfaces, device_path
from spp_connmgr.session import Session


@pytest.fixture
def bus() -> FakeBusConnection:
    return FakeBusConnection(
        {device_path(PEER_MAC): device_interfaces(PEER_MAC, name="chat-peer")}
    )


@pytest.fixture
def session(bus: FakeBusConnection) -> Session:
    return Session(bus)
