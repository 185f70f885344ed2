"""
Shared constants for the Super Metroid multiworld client.
Protocol enums, server defaults and the device memory map.
"""
from enum import Enum, IntEnum


class ConnectionStatus(Enum):
    """Session connection states."""
    DISCONNECTED = "Not Connected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    AUTH_ERROR = "Authentication Error"


class ClientStatus(IntEnum):
    """Client status values reported with StatusUpdate."""
    CLIENT_UNKNOWN = 0
    CLIENT_READY = 10
    CLIENT_PLAYING = 20
    CLIENT_GOAL = 30


class Permission(IntEnum):
    """Server permission flags for release/collect/remaining."""
    DISABLED = 0
    ENABLED = 1
    GOAL = 2
    AUTO = 6
    AUTO_ENABLED = 7

    @property
    def label(self) -> str:
        """Human readable permission text."""
        return PERMISSION_LABELS[self]


PERMISSION_LABELS = {
    Permission.DISABLED: "Disabled",
    Permission.ENABLED: "Enabled",
    Permission.GOAL: "Goal",
    Permission.AUTO: "Auto",
    Permission.AUTO_ENABLED: "Enabled + Auto",
}


# Client identity
GAME_NAME = "Super Metroid"
CLIENT_TAGS = ["Super Metroid Client"]
PROTOCOL_VERSION = {"major": 0, "minor": 1, "build": 9, "class": "Version"}
CLIENT_VERSION = "0.11.0"

# Session server
DEFAULT_SERVER_PORT = 38281
RECONNECT_DELAY = 5.0  # Seconds before a reconnect attempt
MAX_RECONNECT_ATTEMPTS = 10
BOUNCE_INTERVAL = 300.0  # Seconds between keep-alive bounces

# SNI (usb2snes protocol) endpoint
DEFAULT_SNI_ADDRESS = "ws://localhost:23074"
DEVICE_ADDRESS_SPACE = "SNES"  # FXPak Pro address space, LoROM map
DEVICE_REQUEST_TIMEOUT = 5.0
DEVICE_REDISCOVER_DELAY = 5.0

# FXPak Pro memory mapping
ROM_START = 0x000000
WRAM_START = 0xF50000
SRAM_START = 0xE00000

ROMNAME_START = ROM_START + 0x007FC0
ROMNAME_SIZE = 0x15

GAME_MODE_ADDR = WRAM_START + 0x0998
ENDGAME_MODES = frozenset({0x26, 0x27})

# RECV and SEND are from the game's perspective: the client writes the
# receive queue and reads the send queue.
RECV_PROGRESS_ADDR = SRAM_START + 0x2000
RECV_QUEUE_START = RECV_PROGRESS_ADDR
RECV_QUEUE_COUNTERS = RECV_PROGRESS_ADDR + 0x600  # 4 bytes, applied count at +2
RECV_QUEUE_WCOUNT = RECV_PROGRESS_ADDR + 0x602
RECV_RECORD_SIZE = 4
SEND_QUEUE_RCOUNT = RECV_PROGRESS_ADDR + 0x680  # checkIndex, checkLength
SEND_QUEUE_START = RECV_PROGRESS_ADDR + 0x700
SEND_RECORD_SIZE = 8

LOCATIONS_START_ID = 82000
ITEMS_START_ID = 83000
