"""Tests for protocol models and helpers."""

import json

import pytest

from protocol.models import (
    INBOUND_ADAPTER,
    NetworkItem,
    ReceivedItemQueue,
    ScoutedLocationMap,
    LocationSet,
    Session,
    LocationChecksCommand,
    StatusUpdateCommand,
    SyncCommand,
    DataPackageCommand,
    encode_batch,
    hint_cost_points,
    permission_text,
    capitalize_mode,
    unpack_u16_pair,
    pack_u16,
)


class TestReceivedItemQueue:
    """Dedup rules for the received item queue."""

    def test_duplicate_located_item_ignored(self) -> None:
        queue = ReceivedItemQueue()
        queue.merge([NetworkItem(7, 12, 1)])
        added = queue.merge([NetworkItem(7, 12, 1)])
        assert added == 0
        assert len(queue) == 1

    def test_server_items_always_appended(self) -> None:
        """location <= 0 entries repeat (e.g. starting inventory)."""
        queue = ReceivedItemQueue()
        queue.merge([NetworkItem(7, 0, 1)])
        queue.merge([NetworkItem(7, 0, 1)])
        queue.merge([NetworkItem(7, -1, 0)])
        assert len(queue) == 3

    def test_order_preserved(self) -> None:
        queue = ReceivedItemQueue()
        queue.merge([NetworkItem(1, 5, 2), NetworkItem(2, 6, 2), NetworkItem(3, 0, 0)])
        assert [item.item for item in queue] == [1, 2, 3]
        assert queue[1] == NetworkItem(2, 6, 2)

    def test_clear_forgets_seen(self) -> None:
        queue = ReceivedItemQueue()
        queue.merge([NetworkItem(7, 12, 1)])
        queue.clear()
        assert len(queue) == 0
        assert queue.merge([NetworkItem(7, 12, 1)]) == 1


class TestScoutedLocationMap:

    def test_first_write_wins(self) -> None:
        scouted = ScoutedLocationMap()
        scouted.merge([NetworkItem(item=100, location=5, player=2)])
        scouted.merge([NetworkItem(item=200, location=5, player=3)])
        assert scouted.get(5) == {"item": 100, "player": 2}
        assert 5 in scouted
        assert len(scouted) == 1


class TestLocationSet:

    def test_mark_checked_moves_out_of_missing(self) -> None:
        locations = LocationSet(checked={5}, missing={1, 2, 3})
        locations.mark_checked([2, 42])
        assert locations.checked == {5, 2, 42}
        assert locations.missing == {1, 3}
        assert locations.total == 5


class TestSession:

    def test_player_names(self) -> None:
        session = Session(
            slot=1, team=0,
            players=[{"team": 0, "slot": 1, "alias": "Samus", "name": "samus"},
                     {"team": 0, "slot": 2, "alias": "", "name": "Link"}],
            locations=LocationSet()
        )
        assert session.player_name(0) == "Server"
        assert session.player_name(1) == "Samus"
        assert session.player_name(2) == "Link"
        assert session.player_name(9) == "Player 9"
        assert session.player_count == 2


class TestHintCost:

    def test_twenty_percent_of_five(self) -> None:
        assert hint_cost_points(20, 5) == 1

    def test_rounds_half_up(self) -> None:
        assert hint_cost_points(10, 5) == 1  # 0.5
        assert hint_cost_points(10, 4) == 0  # 0.4
        assert hint_cost_points(0, 100) == 0


class TestInboundParsing:

    def test_discriminates_on_cmd(self) -> None:
        command = INBOUND_ADAPTER.validate_python(
            {"cmd": "ReceivedItems", "index": 0, "items": [{"item": 1, "location": 2, "player": 3, "flags": 0}]}
        )
        assert command.cmd == "ReceivedItems"
        assert command.items[0].location == 2

    def test_data_package_version_prefers_payload(self) -> None:
        command = DataPackageCommand.model_validate(
            {"cmd": "DataPackage", "data": {"games": {}, "version": 4}, "version": 9}
        )
        assert command.package_version == 4

    def test_data_package_version_defaults_to_custom(self) -> None:
        command = DataPackageCommand.model_validate({"cmd": "DataPackage", "data": {"games": {}}})
        assert command.package_version == 0


class TestOutbound:

    def test_encode_batch(self) -> None:
        frame = encode_batch([
            LocationChecksCommand(locations=[82003, 82004]),
            StatusUpdateCommand(status=30),
            SyncCommand(),
        ])
        assert json.loads(frame) == [
            {"cmd": "LocationChecks", "locations": [82003, 82004]},
            {"cmd": "StatusUpdate", "status": 30},
            {"cmd": "Sync"},
        ]


class TestHelpers:

    def test_permission_text(self) -> None:
        assert permission_text({"forfeit": 1, "collect": 7, "remaining": 99}) == {
            "forfeit": "Enabled",
            "collect": "Enabled + Auto",
            "remaining": "99",
        }

    @pytest.mark.parametrize("mode,expected", [("goal", "Goal"), ("ENABLED", "Enabled"), ("", "")])
    def test_capitalize_mode(self, mode, expected) -> None:
        assert capitalize_mode(mode) == expected

    def test_little_endian_words(self) -> None:
        assert unpack_u16_pair(bytes([3, 0, 5, 1])) == (3, 261)
        assert pack_u16(0x1234) == bytes([0x34, 0x12])
