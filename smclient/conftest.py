"""Shared fakes and fixtures for client tests."""

import asyncio
import json
from typing import Dict, List, Optional

import pytest
from websockets.protocol import State

from protocol.models import SessionState, DeviceState

from .datapackage import DataPackageCache
from .errors import DeviceUnavailable
from .session import SessionClient
from .storage import LocalStorage


class FakeSocket:
    """Stand-in for an open websocket. Records sent frames."""

    def __init__(self):
        self.state = State.OPEN
        self.sent: List[str] = []
        self._inbox: Optional[asyncio.Queue] = None

    @property
    def inbox(self) -> asyncio.Queue:
        # Created lazily so it binds to the running loop
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    async def send(self, data) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.state = State.CLOSED
        self.inbox.put_nowait(None)

    def feed(self, commands: list) -> None:
        self.inbox.put_nowait(json.dumps(commands))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            yield message

    def commands(self) -> List[dict]:
        """All sent commands, flattened across batches."""
        return [command for frame in self.sent for command in json.loads(frame)]

    def commands_named(self, name: str) -> List[dict]:
        return [c for c in self.commands() if c["cmd"] == name]


class FakeDevice:
    """Byte-addressable memory standing in for the device bridge."""

    def __init__(self):
        self.memory: Dict[int, int] = {}
        self.reads: List[tuple] = []
        self.writes: List[tuple] = []
        self.fail = False

    def poke(self, address: int, data: bytes) -> None:
        for offset, byte in enumerate(data):
            self.memory[address + offset] = byte

    def peek(self, address: int, length: int) -> bytes:
        return bytes(self.memory.get(address + i, 0) for i in range(length))

    async def read(self, address: int, length: int) -> bytes:
        if self.fail:
            raise DeviceUnavailable("device gone")
        self.reads.append((address, length))
        return self.peek(address, length)

    async def write(self, address: int, data: bytes) -> bool:
        if self.fail:
            raise DeviceUnavailable("device gone")
        self.writes.append((address, bytes(data)))
        self.poke(address, data)
        return True


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path))


@pytest.fixture
def make_client(storage):
    """Factory fixture: a SessionClient with an attached device and captured console."""
    def _make(device: Optional[str] = "fxpak"):
        session_state = SessionState()
        device_state = DeviceState(device=device)
        client = SessionClient(
            state=session_state,
            device_state=device_state,
            cache=DataPackageCache(storage),
            storage=storage
        )
        client.messages = []
        client.on_console_message = client.messages.append
        return client
    return _make


def connected_message(**overrides) -> list:
    """A Connected batch for slot 1 with two players."""
    command = {
        "cmd": "Connected",
        "team": 0,
        "slot": 1,
        "players": [
            {"team": 0, "slot": 1, "alias": "Samus", "name": "Samus"},
            {"team": 0, "slot": 2, "alias": "Link", "name": "Link"},
        ],
        "checked_locations": [],
        "missing_locations": [82001, 82002],
        "slot_data": {},
    }
    command.update(overrides)
    return [command]
