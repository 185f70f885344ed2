"""
Session Client - WebSocket connection to the multiworld server
Encodes outbound commands, dispatches inbound command batches and owns the
session state.
"""
import asyncio
import base64
import json
import logging
import re
from typing import Optional, Callable, Dict, Any, Awaitable, Iterable, List, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State
from pydantic import ValidationError

from protocol.constants import (
    ConnectionStatus,
    ClientStatus,
    DEFAULT_SERVER_PORT,
    GAME_NAME,
    CLIENT_TAGS,
    PROTOCOL_VERSION,
)
from protocol.models import (
    INBOUND_ADAPTER,
    KNOWN_COMMANDS,
    NetworkItem,
    LocationSet,
    Session,
    SessionState,
    DeviceState,
    OutboundCommand,
    ConnectCommand,
    LocationChecksCommand,
    StatusUpdateCommand,
    BounceCommand,
    SyncCommand,
    GetDataPackageCommand,
    SayCommand,
    encode_batch,
    permission_text,
    capitalize_mode,
)

from .datapackage import DataPackageCache
from .errors import ProtocolError, AuthError, NetworkError, DeviceError
from .storage import LocalStorage, get_client_id

logger = logging.getLogger(__name__)
console_logger = logging.getLogger("console")

CONNECTION_LOST_MESSAGE = (
    "Server connection lost. The connection closed unexpectedly. "
    "Please try to reconnect, or restart the client."
)


def normalize_address(address: str, default_port: int = DEFAULT_SERVER_PORT) -> str:
    """
    Turn user input into a websocket URL.

    Accepts "/connect host[:port]", "host", "host:port" and full ws:// or
    wss:// URLs. A missing port defaults to the server's standard port.
    """
    address = address.strip()
    if address.startswith("/connect "):
        address = address[len("/connect "):].strip()

    scheme = "ws://"
    if "://" in address:
        scheme, address = address.split("://", 1)
        scheme += "://"

    if not re.search(r":\d+$", address):
        address = f"{address}:{default_port}"
    return scheme + address


def parse_command(raw: Any):
    """
    Validate one element of an inbound batch.

    Returns:
        Parsed command model, or None for unknown commands.
    """
    if not isinstance(raw, dict):
        raise ProtocolError(f"Expected a command object, got {type(raw).__name__}")

    cmd = raw.get("cmd")
    if cmd not in KNOWN_COMMANDS:
        logger.debug(f"[SESSION] Ignoring unknown command: {cmd}")
        return None

    try:
        return INBOUND_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {cmd} command: {e}") from e


class SessionClient:
    """
    WebSocket client for the multiworld session server.
    Handles bi-directional command batches.
    """

    def __init__(
        self,
        state: SessionState,
        device_state: DeviceState,
        cache: DataPackageCache,
        storage: LocalStorage,
        default_port: int = DEFAULT_SERVER_PORT
    ):
        """
        Initialize session client.

        Args:
            state: Session state, owned by the coordinator.
            device_state: Device state, owned by the coordinator.
            cache: Data package cache for id -> name lookups.
            storage: Local storage holding the client id.
            default_port: Port used when an address has none.
        """
        self.state = state
        self.device_state = device_state
        self.cache = cache
        self.storage = storage
        self.default_port = default_port

        self.websocket = None
        self._listener_task: Optional[asyncio.Task] = None
        self._closing: Set[asyncio.Task] = set()

        # Handlers
        self.on_connected: Optional[Callable[[Session], None]] = None
        self.on_close: Optional[Callable[[], None]] = None
        self.on_status_change: Optional[Callable[[ConnectionStatus], None]] = None
        self.on_device_error: Optional[Callable[[DeviceError], None]] = None
        self.on_console_message: Callable[[str], None] = console_logger.info
        self.rom_name_provider: Optional[Callable[[], Awaitable[bytes]]] = None

        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "RoomInfo": self._on_room_info,
            "Connected": self._on_connected,
            "ConnectionRefused": self._on_connection_refused,
            "ReceivedItems": self._on_received_items,
            "LocationInfo": self._on_location_info,
            "RoomUpdate": self._on_room_update,
            "Print": self._on_print,
            "PrintJSON": self._on_print_json,
            "DataPackage": self._on_data_package,
            "Bounced": self._on_bounced,
        }

    def is_open(self) -> bool:
        """Check if the session socket is open."""
        return self.websocket is not None and self.websocket.state is State.OPEN

    def console(self, text: str):
        """Surface a user-facing message."""
        self.on_console_message(text)

    def _set_status(self, status: ConnectionStatus):
        self.state.status = status
        if self.on_status_change:
            self.on_status_change(status)

    async def connect(self, address: str, password: Optional[str] = None):
        """
        Connect to a session server.

        Args:
            address: Server address, see normalize_address.
            password: Room password, if any.
        """
        if self.is_open():
            await self.close()

        # New connection attempt, no auth error has occurred yet
        self.state.auth_error = False

        # Nothing to authenticate with until a device is attached
        if not self.device_state.selected:
            logger.info("[SESSION] No device selected, not connecting")
            return

        address = normalize_address(address, self.default_port)
        self.state.server_address = address
        self.state.password = password
        self._set_status(ConnectionStatus.CONNECTING)

        logger.info(f"[SESSION] Connecting to {address}...")
        try:
            websocket = await websockets.connect(
                address,
                ping_interval=20,
                ping_timeout=180,
                close_timeout=1,
                max_size=None
            )
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            error = NetworkError(f"Could not connect to {address}: {e}")
            logger.warning(f"[SESSION] {error}")
            self.console(str(error))
            self._handle_closed()
            return

        self.attach(websocket)

    def attach(self, websocket):
        """Adopt an open socket and start listening on it."""
        previous = self.websocket
        self.websocket = websocket

        # Only one socket may be live; a superseded one is closed and its
        # listener exits without touching the new session.
        if previous is not None and previous is not websocket:
            logger.info("[SESSION] Closing superseded socket")
            task = asyncio.create_task(self._close_socket(previous))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

        # The server reports everything already sent to this slot after
        # authenticating. Start from an empty queue so a previous session's
        # items cannot leak into this one.
        self.state.received_items.clear()

        self._listener_task = asyncio.create_task(self._listen(websocket))
        logger.info("[SESSION] Socket open, awaiting RoomInfo")

    async def _listen(self, websocket):
        """Listen for incoming batches until the socket closes."""
        try:
            async for message in websocket:
                if self.websocket is not websocket:
                    logger.debug("[SESSION] Dropping batch from superseded socket")
                    break
                await self.handle_message(message)
        except ConnectionClosed as e:
            logger.info(f"[SESSION] Connection closed: {e}")
        except (WebSocketException, OSError) as e:
            logger.warning(f"[SESSION] Listener error: {e}")
            self.console(CONNECTION_LOST_MESSAGE)
        finally:
            # A replaced socket must not tear down its successor
            if self.websocket is websocket:
                self.websocket = None
                self._listener_task = None
                self._handle_closed()

    def _handle_closed(self):
        if self.state.status is not ConnectionStatus.AUTH_ERROR:
            self._set_status(ConnectionStatus.DISCONNECTED)
        self.state.session = None
        logger.info("[SESSION] Disconnected")
        if self.on_close:
            self.on_close()

    async def handle_message(self, raw):
        """
        Handle one websocket frame: a JSON array of commands.

        Malformed frames and elements are logged and skipped; the
        connection is unaffected.
        """
        try:
            commands = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"[SESSION] {ProtocolError(f'Undecodable frame: {e}')}")
            return

        if not isinstance(commands, list):
            logger.warning(f"[SESSION] {ProtocolError('Frame is not a command batch')}")
            return

        for raw_command in commands:
            try:
                command = parse_command(raw_command)
            except ProtocolError as e:
                logger.warning(f"[SESSION] {e}")
                continue
            if command is not None:
                await self._dispatch(command)

    async def _dispatch(self, command):
        handler = self._handlers[command.cmd]
        try:
            await handler(command)
        except DeviceError as e:
            logger.error(f"[SESSION] Device error while handling {command.cmd}: {e}")
            if self.on_device_error:
                self.on_device_error(e)
        except NetworkError as e:
            logger.warning(f"[SESSION] Could not answer {command.cmd}: {e}")

    # ------------------------------------------------------------------
    # Inbound handlers
    # ------------------------------------------------------------------

    def _apply_room_fields(self, command):
        room = self.state.room
        if command.version is not None:
            room.server_version = str(command.version)
        if command.permissions is not None:
            room.permissions = permission_text(command.permissions)
        if command.forfeit_mode is not None:
            room.permissions["forfeit"] = capitalize_mode(command.forfeit_mode)
        if command.remaining_mode is not None:
            room.permissions["remaining"] = capitalize_mode(command.remaining_mode)
        if command.hint_cost is not None:
            room.hint_cost = command.hint_cost
        if command.location_check_points is not None:
            room.location_check_points = command.location_check_points

    async def _on_room_info(self, command):
        self._apply_room_fields(command)
        logger.info(
            f"[SESSION] Room info: server {self.state.room.server_version}, "
            f"permissions {self.state.room.permissions}"
        )

        if self.cache.needs_update(command.datapackage_version):
            await self.request_data_package()
        else:
            self.cache.load()

        await self._authenticate()

    async def _authenticate(self):
        rom_name = b""
        if self.rom_name_provider:
            rom_name = await self.rom_name_provider()

        await self.send(ConnectCommand(
            game=GAME_NAME,
            name=base64.b64encode(rom_name).decode(),
            uuid=get_client_id(self.storage),
            tags=list(CLIENT_TAGS),
            password=self.state.password,
            version=dict(PROTOCOL_VERSION)
        ))

    async def _on_connected(self, command):
        self.state.last_server_address = self.state.server_address
        self.state.reconnect_attempts = 0

        if command.hint_cost is not None:
            self.state.room.hint_cost = command.hint_cost
        if command.hint_points is not None:
            self.state.room.hint_points = command.hint_points

        checked = set(command.checked_locations)
        self.state.session = Session(
            slot=command.slot,
            team=command.team,
            players=command.players,
            locations=LocationSet(
                checked=checked,
                missing=set(command.missing_locations) - checked
            ),
            slot_data=command.slot_data
        )

        # Treat every Connected as a possibly different save: the server
        # resends the full item history, so start from an empty queue.
        self.state.received_items.clear()

        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(f"[SESSION] Connected as slot {command.slot} (team {command.team})")
        self.console(f"Connected. Hint cost: {self.state.hint_cost_points} points.")

        if self.on_connected:
            self.on_connected(self.state.session)

    async def _on_connection_refused(self, command):
        self._set_status(ConnectionStatus.AUTH_ERROR)
        self.state.auth_error = True

        if "InvalidPassword" in command.errors:
            if self.state.password is None:
                message = ("A password is required to connect to the server. "
                           "Please use /connect [server] [password]")
            else:
                message = "The password you provided was rejected by the server."
        else:
            message = f"Error while connecting to server: {', '.join(command.errors)}."

        error = AuthError(message)
        logger.warning(f"[SESSION] Connection refused: {command.errors}")
        self.console(str(error))
        await self.close()

    async def _on_received_items(self, command):
        added = self.state.received_items.merge(
            NetworkItem.from_wire(item) for item in command.items
        )
        logger.debug(
            f"[SESSION] Received {len(command.items)} items, {added} new, "
            f"{len(self.state.received_items)} queued"
        )

    async def _on_location_info(self, command):
        self.state.scouted_locations.merge(
            NetworkItem.from_wire(location) for location in command.locations
        )

    async def _on_room_update(self, command):
        self._apply_room_fields(command)
        if command.hint_points is not None:
            self.state.room.hint_points = command.hint_points
        if command.checked_locations and self.state.session is not None:
            self.state.session.locations.mark_checked(command.checked_locations)
        logger.debug(f"[SESSION] Room update: {command.model_dump(exclude_none=True)}")

    async def _on_print(self, command):
        self.console(command.text)

    async def _on_print_json(self, command):
        self.console(self.format_print_json(command.data))

    async def _on_data_package(self, command):
        self.cache.store(command.data, command.package_version)
        logger.info(f"[SESSION] Data package version {command.package_version} received")

    async def _on_bounced(self, command):
        # Keep-alive acknowledgement
        pass

    def format_print_json(self, parts: List[Dict[str, Any]]) -> str:
        """Flatten PrintJSON parts into text, resolving ids to names."""
        session = self.state.session
        pieces = []
        for part in parts:
            text = part.get("text", "")
            part_type = part.get("type")
            try:
                if part_type == "player_id" and session is not None:
                    text = session.player_name(int(text))
                elif part_type == "item_id":
                    text = self.cache.item_name(int(text))
                elif part_type == "location_id":
                    text = self.cache.location_name(int(text))
            except ValueError:
                pass
            pieces.append(str(text))
        return "".join(pieces)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, *commands: OutboundCommand):
        """
        Send commands to the server as one batch.

        Raises:
            NetworkError: The socket is not open or closed mid-send.
        """
        if not self.is_open():
            raise NetworkError("Not connected to the session server")
        try:
            await self.websocket.send(encode_batch(commands))
        except ConnectionClosed as e:
            raise NetworkError(f"Connection closed while sending: {e}") from e

    async def send_location_checks(self, location_ids: Iterable[int]):
        """Report checked locations and record them locally."""
        location_ids = list(location_ids)
        if self.state.session is not None:
            self.state.session.locations.mark_checked(location_ids)
        await self.send(LocationChecksCommand(locations=location_ids))

    async def send_status(self, status: ClientStatus):
        await self.send(StatusUpdateCommand(status=int(status)))

    async def bounce(self, slots: List[int], data: Any):
        await self.send(BounceCommand(slots=slots, data=data))

    async def say(self, text: str):
        """Send a chat message or server command."""
        if self.is_open():
            await self.send(SayCommand(text=text))

    async def sync(self):
        """Ask the server to resend the item history."""
        if self.is_open():
            await self.send(SyncCommand())

    async def request_data_package(self):
        if self.is_open():
            await self.send(GetDataPackageCommand())

    async def close(self):
        """Close the socket; close handling runs from the listener."""
        if self.websocket is None:
            return
        await self._close_socket(self.websocket)

    async def _close_socket(self, websocket):
        try:
            await websocket.close()
        except (WebSocketException, OSError) as e:
            logger.debug(f"[SESSION] Error while closing: {e}")

    async def stop(self):
        """Close the socket and wait for the listener to finish."""
        self.on_close = None
        task = self._listener_task
        await self.close()
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=2)
            except asyncio.TimeoutError:
                task.cancel()
