"""Tests for the reconciliation loop against a fake device memory."""

import asyncio
import json
import time

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.protocol import State

from protocol.constants import (
    GAME_MODE_ADDR,
    SEND_QUEUE_RCOUNT,
    SEND_QUEUE_START,
    RECV_QUEUE_START,
    RECV_QUEUE_WCOUNT,
)
from protocol.models import NetworkItem, pack_u16

from .conftest import FakeDevice, FakeSocket, connected_message
from .watcher import ReconciliationLoop, device_player_index, location_id_from_record


def _send_record(item_index: int) -> bytes:
    """8 byte check record with the item index in bytes 4-5."""
    return bytes([0, 0, 0, 0]) + pack_u16(item_index << 3) + bytes([0, 0])


class GatedDevice(FakeDevice):
    """Device whose reads wait until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def read(self, address: int, length: int) -> bytes:
        await self.gate.wait()
        return await super().read(address, length)


@pytest.fixture
def make_loop(make_client):
    """Factory fixture: loop wired to a connected client and a fake device."""
    def _make(device=None):
        device = device or FakeDevice()
        client = make_client()
        socket = FakeSocket()
        client.websocket = socket
        # Connected handling needs no running loop
        asyncio.run(client.handle_message(json.dumps(connected_message())))
        loop = ReconciliationLoop(
            device=device,
            client=client,
            session_state=client.state,
            device_state=client.device_state,
            cache=client.cache
        )
        return loop, device, socket
    return _make


class TestHelpers:

    def test_server_maps_to_trailing_index(self) -> None:
        assert device_player_index(0, 4) == 4

    def test_players_are_zero_based(self) -> None:
        assert device_player_index(1, 4) == 0
        assert device_player_index(3, 4) == 2

    def test_location_from_record(self) -> None:
        assert location_id_from_record(_send_record(10)) == 82010


class TestChecks:

    def test_cursor_advances_by_batch(self, make_loop) -> None:
        loop, device, socket = make_loop()
        device.poke(SEND_QUEUE_RCOUNT, pack_u16(3) + pack_u16(5))
        device.poke(SEND_QUEUE_START + 3 * 8, _send_record(10))
        device.poke(SEND_QUEUE_START + 4 * 8, _send_record(11))

        assert asyncio.run(loop.tick()) is True

        record_reads = [r for r in device.reads if SEND_QUEUE_START <= r[0] < SEND_QUEUE_START + 0x100]
        assert len(record_reads) == 2
        assert socket.commands_named("LocationChecks") == [
            {"cmd": "LocationChecks", "locations": [82010, 82011]}
        ]
        assert device.peek(SEND_QUEUE_RCOUNT, 2) == pack_u16(5)
        assert {82010, 82011} <= loop.session_state.session.locations.checked

    def test_no_new_checks_sends_nothing(self, make_loop) -> None:
        loop, device, socket = make_loop()
        device.poke(SEND_QUEUE_RCOUNT, pack_u16(5) + pack_u16(5))

        asyncio.run(loop.tick())

        assert socket.commands_named("LocationChecks") == []
        assert device.peek(SEND_QUEUE_RCOUNT, 2) == pack_u16(5)

    def test_cursor_kept_while_disconnected(self, make_loop) -> None:
        loop, device, socket = make_loop()
        socket.state = State.CLOSED
        device.poke(SEND_QUEUE_RCOUNT, pack_u16(0) + pack_u16(1))
        device.poke(SEND_QUEUE_START, _send_record(2))

        asyncio.run(loop.tick())

        assert socket.commands_named("LocationChecks") == []
        assert device.peek(SEND_QUEUE_RCOUNT, 2) == pack_u16(0)


class TestGoal:

    def test_goal_reported_once(self, make_loop) -> None:
        loop, device, socket = make_loop()
        device.poke(GAME_MODE_ADDR, bytes([0x26]))
        device.poke(SEND_QUEUE_RCOUNT, pack_u16(0) + pack_u16(1))

        async def run():
            await loop.tick()
            await loop.tick()
        asyncio.run(run())

        assert socket.commands_named("StatusUpdate") == [{"cmd": "StatusUpdate", "status": 30}]
        assert loop.device_state.game_completed is True
        # End-game ticks touch nothing past the game mode
        assert all(address == GAME_MODE_ADDR for address, _ in device.reads)
        assert socket.commands_named("LocationChecks") == []


class TestItems:

    def test_one_item_per_tick(self, make_loop) -> None:
        loop, device, socket = make_loop()
        loop.session_state.received_items.merge([
            NetworkItem(item=83005, location=82100, player=2),
            NetworkItem(item=83007, location=0, player=0),
        ])

        asyncio.run(loop.tick())
        assert device.peek(RECV_QUEUE_START, 4) == bytes([1, 0, 5, 0])
        assert device.peek(RECV_QUEUE_WCOUNT, 2) == pack_u16(1)

        asyncio.run(loop.tick())
        # Two players, so the server's slot is index 2
        assert device.peek(RECV_QUEUE_START + 4, 4) == bytes([2, 0, 7, 0])
        assert device.peek(RECV_QUEUE_WCOUNT, 2) == pack_u16(2)

        writes_before = len(device.writes)
        asyncio.run(loop.tick())
        assert len(device.writes) == writes_before
        assert loop.stats.items_delivered == 2

    def test_paused_delivery(self, make_loop) -> None:
        loop, device, socket = make_loop()
        loop.device_state.receive_items = False
        loop.session_state.received_items.merge([NetworkItem(83005, 82100, 2)])

        asyncio.run(loop.tick())

        assert device.writes == []


class TestScheduling:

    def test_overlapping_tick_skipped(self, make_loop) -> None:
        loop, device, socket = make_loop(GatedDevice())

        async def run():
            first = asyncio.create_task(loop.tick())
            for _ in range(3):
                await asyncio.sleep(0)
            assert loop.tick_in_progress
            assert await loop.tick() is False
            device.gate.set()
            assert await first is True
        asyncio.run(run())

        assert loop.stats.ticks_skipped == 1
        assert loop.stats.ticks_run == 1
        assert loop.tick_in_progress is False

    def test_bounce_sent_when_due(self, make_loop) -> None:
        loop, device, socket = make_loop()

        async def run():
            await loop.tick()
            await loop.tick()
        asyncio.run(run())

        bounces = socket.commands_named("Bounce")
        assert len(bounces) == 1
        assert bounces[0]["slots"] == [1]

    def test_timer_runs_ticks(self, make_loop) -> None:
        loop, device, socket = make_loop()
        loop.tick_interval = 0.01

        async def run():
            loop.start()
            assert loop.running
            await asyncio.sleep(0.1)
            loop.stop()
        asyncio.run(run())

        assert loop.stats.ticks_run >= 1
        assert loop.running is False


class TestFailure:

    def test_device_error_stops_loop(self, make_loop) -> None:
        loop, device, socket = make_loop()
        failures = []
        loop.on_failure = failures.append
        device.fail = True

        async def run():
            loop.start()
            await loop.tick()
        asyncio.run(run())

        assert len(failures) == 1
        assert loop.stats.failures == 1
        assert loop.running is False
        assert loop.tick_in_progress is False

    def test_send_failure_keeps_device(self, make_loop) -> None:
        loop, device, socket = make_loop()
        failures = []
        loop.on_failure = failures.append
        loop.device_state.last_bounce = time.time()
        device.poke(SEND_QUEUE_RCOUNT, pack_u16(0) + pack_u16(1))
        device.poke(SEND_QUEUE_START, _send_record(10))

        async def drop(data):
            raise ConnectionClosedError(None, None)
        socket.send = drop

        async def run():
            loop.start()
            assert await loop.tick() is True
        asyncio.run(run())

        assert failures == []
        assert loop.stats.failures == 0
        assert loop.running is True
        assert device.peek(SEND_QUEUE_RCOUNT, 2) == pack_u16(0)
        loop.stop()
