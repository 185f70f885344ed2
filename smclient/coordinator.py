"""
Client Coordinator - Main Orchestration Module
Owns the session and device state and wires the device bridge, session
client, reconciliation loop and reconnect supervisor together.
"""
import asyncio
import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable, Awaitable, Set

from protocol.constants import ROMNAME_START, ROMNAME_SIZE, CLIENT_VERSION
from protocol.models import SessionState, DeviceState, Session

from .config import ClientConfig, get_config
from .datapackage import DataPackageCache
from .device import DeviceBridge
from .errors import DeviceError, DeviceUnavailable, NetworkError
from .session import SessionClient
from .storage import LocalStorage
from .supervisor import ReconnectSupervisor
from .watcher import ReconciliationLoop

logger = logging.getLogger(__name__)

DEVICE_PROBLEM_MESSAGE = (
    "There was a problem communicating with your SNES device. Please ensure it "
    "is powered on, the ROM is loaded, and it is connected to your computer."
)


@dataclass
class CoordinatorStats:
    """Statistics for coordinator."""
    start_time: float = 0.0
    device_discoveries: int = 0
    device_failures: int = 0
    commands_handled: int = 0


class ClientCoordinator:
    """
    Main coordinator for the client.
    Single owner of SessionState and DeviceState; components receive them
    by reference.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize client coordinator.

        Args:
            config: Configuration object. If None, uses environment/defaults.
        """
        self.config = config or get_config()

        # State
        self.session_state = SessionState(password=self.config.session.password)
        self.device_state = DeviceState(receive_items=self.config.receive_items)
        self.running = False

        # Core components
        self.storage = LocalStorage(self.config.data_dir)
        self.cache = DataPackageCache(self.storage)
        self.device = DeviceBridge(
            address=self.config.device.sni_address,
            request_timeout=self.config.device.request_timeout
        )
        self.client = SessionClient(
            state=self.session_state,
            device_state=self.device_state,
            cache=self.cache,
            storage=self.storage
        )
        self.watcher = ReconciliationLoop(
            device=self.device,
            client=self.client,
            session_state=self.session_state,
            device_state=self.device_state,
            cache=self.cache,
            tick_interval=self.config.watcher.tick_interval,
            bounce_interval=self.config.watcher.bounce_interval
        )
        self.supervisor = ReconnectSupervisor(
            client=self.client,
            session_state=self.session_state,
            device_state=self.device_state,
            delay=self.config.session.reconnect_delay,
            max_attempts=self.config.session.max_reconnect_attempts
        )

        # Set up handlers
        self.client.on_connected = self._on_session_connected
        self.client.on_close = self._on_session_close
        self.client.on_device_error = self.handle_device_failure
        self.client.rom_name_provider = self._read_rom_name
        self.watcher.on_failure = self.handle_device_failure

        self._rediscover_task: Optional[asyncio.Task] = None
        self._input_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._commands: Dict[str, Callable[[List[str]], Awaitable[None]]] = {
            "/connect": self._cmd_connect,
            "/disconnect": self._cmd_disconnect,
            "/sync": self._cmd_sync,
            "/items": self._cmd_items,
            "/missing": self._cmd_missing,
            "/pause": self._cmd_pause,
            "/resume": self._cmd_resume,
            "/device": self._cmd_device,
            "/help": self._cmd_help,
        }

        # Statistics
        self.stats = CoordinatorStats(start_time=time.time())

    def console(self, text: str):
        self.client.console(text)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def initialize(self):
        """Load cached data and find a device."""
        logger.info(f"[COORDINATOR] Initializing client {CLIENT_VERSION}...")
        self.cache.load()
        await self.discover_device()
        logger.info("[COORDINATOR] Initialized")

    async def start(self):
        """Connect to the configured server and run until stopped."""
        self.running = True
        logger.info("[COORDINATOR] Starting...")

        if self.config.session.server_address:
            await self.connect(self.config.session.server_address, self.config.session.password)

        if self.config.enable_console:
            self._input_task = asyncio.create_task(self._read_console())

        while self.running:
            await asyncio.sleep(0.5)

    async def stop(self):
        """Stop everything and close both sockets."""
        logger.info("[COORDINATOR] Stopping...")
        self.running = False

        self.supervisor.enabled = False
        self.supervisor.cancel()
        self.watcher.stop()

        for task in (self._rediscover_task, self._input_task):
            if task is not None and not task.done():
                task.cancel()
        for task in list(self._tasks):
            task.cancel()

        await self.client.stop()
        await self.device.close()
        logger.info(f"[COORDINATOR] Stopped. Stats: {self.get_stats()}")

    # ------------------------------------------------------------------
    # Device lifecycle
    # ------------------------------------------------------------------

    async def discover_device(self) -> bool:
        """
        Attach to a device through SNI.

        On failure a retry is scheduled. On success the session is
        reconnected if a server address is known.
        """
        try:
            device = await self.device.discover(self.config.device.device_name)
        except DeviceUnavailable as e:
            logger.warning(f"[COORDINATOR] Device discovery failed: {e}")
            await self.device.close()
            self._schedule_rediscovery()
            return False

        self.device_state.device = device
        self.device_state.game_completed = False
        self.stats.device_discoveries += 1
        self.console(f"SNES device connected: {device}")

        address = self.session_state.server_address
        if address and not self.client.is_open():
            await self.client.connect(address, self.session_state.password)
        return True

    def _schedule_rediscovery(self):
        if self._rediscover_task is not None and not self._rediscover_task.done():
            return
        self._rediscover_task = asyncio.create_task(self._rediscover_later())

    async def _rediscover_later(self):
        await asyncio.sleep(self.config.device.rediscover_delay)
        self._rediscover_task = None
        await self.discover_device()

    def handle_device_failure(self, error: Exception):
        """
        Tear down after a device failure: stop ticking, forget the device,
        close the session and look for the device again later.
        """
        self.stats.device_failures += 1
        logger.error(f"[COORDINATOR] Device failure: {error}")
        self.console(DEVICE_PROBLEM_MESSAGE)

        self.watcher.stop()
        # Cleared before the session closes so the supervisor does not reconnect
        self.device_state.device = None
        self._spawn(self._teardown_after_failure())

    async def _teardown_after_failure(self):
        await self.device.close()
        await self.client.close()
        self._schedule_rediscovery()

    async def _read_rom_name(self) -> bytes:
        return await self.device.read(ROMNAME_START, ROMNAME_SIZE)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def connect(self, address: str, password: Optional[str] = None):
        """User-initiated connection."""
        if not self.device_state.selected:
            self.console("No SNES device attached yet. Connection will start once one is found.")
            self.session_state.server_address = address
            self.session_state.password = password
            return
        await self.client.connect(address, password)

    async def disconnect(self):
        """User-initiated disconnect; no reconnect follows."""
        self.session_state.server_address = None
        await self.client.close()

    def _on_session_connected(self, session: Session):
        logger.info(f"[COORDINATOR] Session ready for slot {session.slot}")
        self.watcher.start()

    def _on_session_close(self):
        self.watcher.stop()
        self.supervisor.handle_close()

    # ------------------------------------------------------------------
    # Console commands
    # ------------------------------------------------------------------

    @staticmethod
    def _stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue):
        for line in sys.stdin:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(lines.put_nowait, line)
        if not loop.is_closed():
            loop.call_soon_threadsafe(lines.put_nowait, None)

    async def _read_console(self):
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue = asyncio.Queue()
        # Daemon thread: a blocked stdin read must not hold up shutdown
        threading.Thread(target=self._stdin_reader, args=(loop, lines), daemon=True).start()

        while self.running:
            line = await lines.get()
            if line is None:
                break
            await self.handle_input(line)

    async def handle_input(self, line: str):
        """Handle one line typed by the user."""
        line = line.strip()
        if not line:
            return
        self.stats.commands_handled += 1

        command, _, rest = line.partition(" ")
        handler = self._commands.get(command.lower())

        try:
            if handler is not None:
                await handler(rest.split())
            elif self.client.is_open():
                await self.client.say(line)
            else:
                self.console("Not connected to a server.")
        except (NetworkError, DeviceError) as e:
            self.console(f"Command failed: {e}")

    async def _cmd_connect(self, args: List[str]):
        if not args:
            self.console("Usage: /connect [server] [password]")
            return
        password = args[1] if len(args) > 1 else None
        await self.connect(args[0], password)

    async def _cmd_disconnect(self, args: List[str]):
        await self.disconnect()

    async def _cmd_sync(self, args: List[str]):
        await self.client.sync()

    async def _cmd_items(self, args: List[str]):
        queue = self.session_state.received_items
        session = self.session_state.session
        self.console(f"{len(queue)} items received:")
        for item in queue:
            sender = session.player_name(item.player) if session else str(item.player)
            self.console(f"  {self.cache.item_name(item.item)} from {sender}")

    async def _cmd_missing(self, args: List[str]):
        session = self.session_state.session
        if session is None:
            self.console("Not connected to a server.")
            return
        locations = session.locations
        self.console(f"{len(locations.missing)} of {locations.total} locations missing.")

    async def _cmd_pause(self, args: List[str]):
        self.device_state.receive_items = False
        self.console("Item delivery paused.")

    async def _cmd_resume(self, args: List[str]):
        self.device_state.receive_items = True
        self.console("Item delivery resumed.")

    async def _cmd_device(self, args: List[str]):
        if self.device_state.selected:
            self.console(f"Attached to {self.device_state.device}.")
            return
        await self.discover_device()

    async def _cmd_help(self, args: List[str]):
        self.console("Commands: " + ", ".join(sorted(self._commands)))

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        session = self.session_state.session
        return {
            "status": self.session_state.status.value,
            "device": self.device_state.device,
            "slot": session.slot if session else None,
            "received_items": len(self.session_state.received_items),
            "reconnect_attempts": self.session_state.reconnect_attempts,
            "device_discoveries": self.stats.device_discoveries,
            "device_failures": self.stats.device_failures,
            "watcher": {
                "ticks_run": self.watcher.stats.ticks_run,
                "ticks_skipped": self.watcher.stats.ticks_skipped,
                "checks_sent": self.watcher.stats.checks_sent,
                "items_delivered": self.watcher.stats.items_delivered,
            },
            "datapackage": self.cache.get_statistics(),
            "uptime": time.time() - self.stats.start_time,
        }
