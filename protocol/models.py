"""
Shared data models for the multiworld client.
Inbound server commands are validated with pydantic; outbound commands and
client-side state are plain dataclasses.
"""
from dataclasses import dataclass, asdict, field
from typing import Annotated, List, Dict, Optional, Any, Literal, Union, ClassVar, Iterable, Iterator, Tuple
import json
import math

from pydantic import BaseModel, Field, TypeAdapter

from .constants import ConnectionStatus, Permission


# ---------------------------------------------------------------------------
# Inbound commands (server -> client)
# ---------------------------------------------------------------------------

class Version(BaseModel):
    """Server version triple."""
    major: int = 0
    minor: int = 0
    build: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.build}"


class WireItem(BaseModel):
    """Item/location/player triple as sent by the server."""
    item: int
    location: int
    player: int
    flags: int = 0


class RoomInfoCommand(BaseModel):
    cmd: Literal["RoomInfo"]
    version: Optional[Version] = None
    permissions: Optional[Dict[str, int]] = None
    forfeit_mode: Optional[str] = None
    remaining_mode: Optional[str] = None
    hint_cost: int = 0
    location_check_points: int = 0
    datapackage_version: Optional[int] = None


class ConnectedCommand(BaseModel):
    cmd: Literal["Connected"]
    team: int = 0
    slot: int = 0
    players: List[Dict[str, Any]] = Field(default_factory=list)
    checked_locations: List[int] = Field(default_factory=list)
    missing_locations: List[int] = Field(default_factory=list)
    slot_data: Dict[str, Any] = Field(default_factory=dict)
    hint_cost: Optional[int] = None
    hint_points: Optional[int] = None


class ConnectionRefusedCommand(BaseModel):
    cmd: Literal["ConnectionRefused"]
    errors: List[str] = Field(default_factory=list)


class ReceivedItemsCommand(BaseModel):
    cmd: Literal["ReceivedItems"]
    index: int = 0
    items: List[WireItem] = Field(default_factory=list)


class LocationInfoCommand(BaseModel):
    cmd: Literal["LocationInfo"]
    locations: List[WireItem] = Field(default_factory=list)


class RoomUpdateCommand(BaseModel):
    cmd: Literal["RoomUpdate"]
    version: Optional[Version] = None
    permissions: Optional[Dict[str, int]] = None
    forfeit_mode: Optional[str] = None
    remaining_mode: Optional[str] = None
    hint_cost: Optional[int] = None
    location_check_points: Optional[int] = None
    hint_points: Optional[int] = None
    checked_locations: Optional[List[int]] = None


class PrintCommand(BaseModel):
    cmd: Literal["Print"]
    text: str = ""


class PrintJSONCommand(BaseModel):
    cmd: Literal["PrintJSON"]
    data: List[Dict[str, Any]] = Field(default_factory=list)
    type: Optional[str] = None


class GamePackage(BaseModel):
    item_name_to_id: Dict[str, int] = Field(default_factory=dict)
    location_name_to_id: Dict[str, int] = Field(default_factory=dict)
    version: int = 0


class DataPackagePayload(BaseModel):
    games: Dict[str, GamePackage] = Field(default_factory=dict)
    version: Optional[int] = None


class DataPackageCommand(BaseModel):
    cmd: Literal["DataPackage"]
    data: DataPackagePayload
    version: Optional[int] = None

    @property
    def package_version(self) -> int:
        """Version of the package, 0 when the server marks it as custom."""
        if self.data.version is not None:
            return self.data.version
        return self.version or 0


class BouncedCommand(BaseModel):
    cmd: Literal["Bounced"]
    data: Any = None


InboundCommand = Annotated[
    Union[
        RoomInfoCommand,
        ConnectedCommand,
        ConnectionRefusedCommand,
        ReceivedItemsCommand,
        LocationInfoCommand,
        RoomUpdateCommand,
        PrintCommand,
        PrintJSONCommand,
        DataPackageCommand,
        BouncedCommand,
    ],
    Field(discriminator="cmd"),
]

INBOUND_ADAPTER = TypeAdapter(InboundCommand)

KNOWN_COMMANDS = frozenset({
    "RoomInfo", "Connected", "ConnectionRefused", "ReceivedItems",
    "LocationInfo", "RoomUpdate", "Print", "PrintJSON", "DataPackage", "Bounced",
})


# ---------------------------------------------------------------------------
# Outbound commands (client -> server)
# ---------------------------------------------------------------------------

@dataclass
class OutboundCommand:
    """Base for commands sent to the server."""
    cmd: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to wire dictionary."""
        return {"cmd": self.cmd, **asdict(self)}


@dataclass
class ConnectCommand(OutboundCommand):
    cmd: ClassVar[str] = "Connect"
    game: str
    name: str
    uuid: str
    tags: List[str]
    password: Optional[str]
    version: Dict[str, Any]


@dataclass
class LocationChecksCommand(OutboundCommand):
    cmd: ClassVar[str] = "LocationChecks"
    locations: List[int]


@dataclass
class StatusUpdateCommand(OutboundCommand):
    cmd: ClassVar[str] = "StatusUpdate"
    status: int


@dataclass
class BounceCommand(OutboundCommand):
    cmd: ClassVar[str] = "Bounce"
    slots: List[int]
    data: Any


@dataclass
class SyncCommand(OutboundCommand):
    cmd: ClassVar[str] = "Sync"


@dataclass
class GetDataPackageCommand(OutboundCommand):
    cmd: ClassVar[str] = "GetDataPackage"


@dataclass
class SayCommand(OutboundCommand):
    cmd: ClassVar[str] = "Say"
    text: str


def encode_batch(commands: Iterable[OutboundCommand]) -> str:
    """Encode commands as a JSON array batch."""
    return json.dumps([c.to_dict() for c in commands])


# ---------------------------------------------------------------------------
# Client-side state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkItem:
    """An item received from the session server."""
    item: int
    location: int
    player: int

    @classmethod
    def from_wire(cls, wire: WireItem) -> "NetworkItem":
        return cls(item=wire.item, location=wire.location, player=wire.player)


class ReceivedItemQueue:
    """
    Items received from the server, in arrival order.

    Entries bound to a real location (location > 0) are unique by
    (item, location, player). Server-originated entries (location <= 0)
    are always appended.
    """

    def __init__(self):
        self._items: List[NetworkItem] = []
        self._seen: set = set()

    def merge(self, items: Iterable[NetworkItem]) -> int:
        """Merge items into the queue. Returns the number appended."""
        added = 0
        for item in items:
            if item.location > 0:
                key = (item.item, item.location, item.player)
                if key in self._seen:
                    continue
                self._seen.add(key)
            self._items.append(item)
            added += 1
        return added

    def clear(self) -> None:
        self._items.clear()
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> NetworkItem:
        return self._items[index]

    def __iter__(self) -> Iterator[NetworkItem]:
        return iter(self._items)


class ScoutedLocationMap:
    """Scouted location contents. The first confirmation for an id wins."""

    def __init__(self):
        self._locations: Dict[int, Dict[str, int]] = {}

    def merge(self, items: Iterable[NetworkItem]) -> None:
        for item in items:
            if item.location not in self._locations:
                self._locations[item.location] = {"item": item.item, "player": item.player}

    def get(self, location_id: int) -> Optional[Dict[str, int]]:
        return self._locations.get(location_id)

    def __contains__(self, location_id: int) -> bool:
        return location_id in self._locations

    def __len__(self) -> int:
        return len(self._locations)


@dataclass
class LocationSet:
    """Checked and missing location ids reported at connect time."""
    checked: set = field(default_factory=set)
    missing: set = field(default_factory=set)

    def mark_checked(self, location_ids: Iterable[int]) -> None:
        """Grow the checked set; checked ids leave the missing set."""
        for location_id in location_ids:
            self.checked.add(location_id)
            self.missing.discard(location_id)

    @property
    def total(self) -> int:
        return len(self.checked) + len(self.missing)


@dataclass
class Session:
    """Per-connection session data, replaced on every Connected."""
    slot: int
    team: int
    players: List[Dict[str, Any]]
    locations: LocationSet
    slot_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def player_count(self) -> int:
        return len(self.players)

    def player_name(self, slot: int) -> str:
        """Alias or name for a slot, 'Server' for slot 0."""
        if slot == 0:
            return "Server"
        for player in self.players:
            if player.get("slot") == slot and player.get("team", self.team) == self.team:
                return player.get("alias") or player.get("name") or f"Player {slot}"
        return f"Player {slot}"


@dataclass
class RoomInfo:
    """Room metadata shown to the user."""
    server_version: Optional[str] = None
    permissions: Dict[str, str] = field(default_factory=dict)
    hint_cost: int = 0  # Percentage of total locations
    location_check_points: Optional[int] = None
    hint_points: Optional[int] = None


@dataclass
class SessionState:
    """Everything the client knows about the session server."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    server_address: Optional[str] = None
    last_server_address: Optional[str] = None
    password: Optional[str] = None
    auth_error: bool = False
    reconnect_attempts: int = 0
    session: Optional[Session] = None
    room: RoomInfo = field(default_factory=RoomInfo)
    received_items: ReceivedItemQueue = field(default_factory=ReceivedItemQueue)
    scouted_locations: ScoutedLocationMap = field(default_factory=ScoutedLocationMap)

    @property
    def hint_cost_points(self) -> Optional[int]:
        """Hint cost in points for the current session."""
        if self.session is None:
            return None
        return hint_cost_points(self.room.hint_cost, self.session.locations.total)


@dataclass
class DeviceState:
    """Client-side knowledge about the attached device."""
    device: Optional[str] = None
    game_completed: bool = False
    receive_items: bool = True
    last_bounce: float = 0.0

    @property
    def selected(self) -> bool:
        return self.device is not None


def hint_cost_points(hint_cost: int, total_locations: int) -> int:
    """Hint cost percentage applied to the location count, rounded half up."""
    return int(math.floor((hint_cost / 100) * total_locations + 0.5))


def permission_text(permissions: Dict[str, int]) -> Dict[str, str]:
    """Map permission flags to display text."""
    result = {}
    for name, value in permissions.items():
        try:
            result[name] = Permission(value).label
        except ValueError:
            result[name] = str(value)
    return result


def capitalize_mode(mode: str) -> str:
    """Older servers send modes as lower-case strings."""
    return mode[:1].upper() + mode[1:].lower() if mode else mode


def unpack_u16_pair(record: bytes) -> Tuple[int, int]:
    """Split a 4 byte record into two little-endian u16 values."""
    return record[0] | (record[1] << 8), record[2] | (record[3] << 8)


def pack_u16(value: int) -> bytes:
    """Little-endian u16."""
    return bytes([value & 0xFF, (value >> 8) & 0xFF])
