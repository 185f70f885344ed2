"""
Game Watcher - Reconciliation loop between device memory and the session
Reads the game's check queue and applied-item counter each tick, reports
new checks to the server and feeds received items into the game.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable, List, Tuple, Set

from protocol.constants import (
    ClientStatus,
    GAME_MODE_ADDR,
    ENDGAME_MODES,
    SEND_QUEUE_RCOUNT,
    SEND_QUEUE_START,
    SEND_RECORD_SIZE,
    RECV_QUEUE_START,
    RECV_QUEUE_COUNTERS,
    RECV_QUEUE_WCOUNT,
    RECV_RECORD_SIZE,
    LOCATIONS_START_ID,
    ITEMS_START_ID,
    BOUNCE_INTERVAL,
)
from protocol.models import SessionState, DeviceState, NetworkItem, unpack_u16_pair, pack_u16

from .datapackage import DataPackageCache
from .device import DeviceBridge
from .errors import NetworkError
from .session import SessionClient

logger = logging.getLogger(__name__)


def device_player_index(player: int, player_count: int) -> int:
    """
    Player slot as the game indexes it.

    Slot 0 is the server itself (items with no human source); the game
    keeps it in the trailing entry after all real players.
    """
    if player == 0:
        return player_count
    return player - 1


def location_id_from_record(record: bytes) -> int:
    """Location id for an 8 byte send-queue record (item index in bytes 4-5, shifted)."""
    item_index = (record[4] | (record[5] << 8)) >> 3
    return LOCATIONS_START_ID + item_index


@dataclass
class WatcherStats:
    """Statistics for the watcher."""
    ticks_run: int = 0
    ticks_skipped: int = 0
    checks_sent: int = 0
    items_delivered: int = 0
    failures: int = 0


class ReconciliationLoop:
    """
    Periodic tick moving data between the device and the session.

    Ticks never overlap: device cursors are read and written within one
    tick and an interleaved tick would apply them out of order.
    """

    def __init__(
        self,
        device: DeviceBridge,
        client: SessionClient,
        session_state: SessionState,
        device_state: DeviceState,
        cache: Optional[DataPackageCache] = None,
        tick_interval: float = 0.125,
        bounce_interval: float = BOUNCE_INTERVAL
    ):
        """
        Initialize the loop.

        Args:
            device: Device bridge for memory access.
            client: Session client for outbound commands.
            session_state: Session state (received items, slot, players).
            device_state: Device state (completion, delivery toggle, bounce time).
            cache: Data package cache, used for log lines only.
            tick_interval: Seconds between ticks.
            bounce_interval: Seconds between keep-alive bounces.
        """
        self.device = device
        self.client = client
        self.session_state = session_state
        self.device_state = device_state
        self.cache = cache
        self.tick_interval = tick_interval
        self.bounce_interval = bounce_interval

        self.on_failure: Optional[Callable[[Exception], None]] = None

        self.stats = WatcherStats()
        self._tick_in_progress = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def tick_in_progress(self) -> bool:
        return self._tick_in_progress

    def start(self):
        """Start (or restart) the tick timer."""
        self.stop()
        self._timer_task = asyncio.create_task(self._run())
        logger.info(f"[WATCHER] Started, tick every {self.tick_interval}s")

    def stop(self):
        """Cancel the tick timer. A tick already running finishes on its own."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("[WATCHER] Stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            task = asyncio.create_task(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

    async def tick(self) -> bool:
        """
        Run one tick unless another is still in progress.

        Returns:
            False if the tick was skipped.
        """
        if self._tick_in_progress:
            self.stats.ticks_skipped += 1
            return False

        self._tick_in_progress = True
        try:
            await self._tick()
            self.stats.ticks_run += 1
        except NetworkError as e:
            # Session loss, not a device fault
            logger.warning(f"[WATCHER] Tick aborted, session unavailable: {e}")
        except Exception as e:
            self._fail(e)
        finally:
            self._tick_in_progress = False
        return True

    def _fail(self, error: Exception):
        self.stats.failures += 1
        logger.error(f"[WATCHER] Tick aborted: {error}")
        self.stop()
        if self.on_failure:
            self.on_failure(error)

    async def _tick(self):
        session = self.session_state.session

        # 1. Keep-alive
        now = time.time()
        if (now - self.device_state.last_bounce > self.bounce_interval
                and session is not None and self.client.is_open()):
            self.device_state.last_bounce = now
            await self.client.bounce([session.slot], int(now * 1000))

        # 2. Goal; nothing else is read or written once the game has ended
        game_mode = (await self.device.read(GAME_MODE_ADDR, 1))[0]
        if game_mode in ENDGAME_MODES:
            if not self.device_state.game_completed and self.client.is_open():
                await self.client.send_status(ClientStatus.CLIENT_GOAL)
                self.device_state.game_completed = True
                logger.info("[WATCHER] Goal reported")
            return

        # 3-4. Checks
        check_index, location_ids = await self.scan_checks()
        if location_ids and self.client.is_open():
            await self.client.send_location_checks(location_ids)
            await self.device.write(SEND_QUEUE_RCOUNT, pack_u16(check_index + len(location_ids)))
            self.stats.checks_sent += len(location_ids)
            logger.info(f"[WATCHER] Reported {len(location_ids)} checks: {self._location_names(location_ids)}")

        # 5. Items
        if self.device_state.receive_items:
            await self.deliver_next_item()

    async def scan_checks(self) -> Tuple[int, List[int]]:
        """
        Read unacknowledged entries of the game's check queue.

        Returns:
            (checkIndex, location ids for [checkIndex, checkLength)).
        """
        check_index, check_length = unpack_u16_pair(await self.device.read(SEND_QUEUE_RCOUNT, 4))

        location_ids = []
        for index in range(check_index, check_length):
            record = await self.device.read(SEND_QUEUE_START + index * SEND_RECORD_SIZE, SEND_RECORD_SIZE)
            location_ids.append(location_id_from_record(record))
        return check_index, location_ids

    async def deliver_next_item(self) -> Optional[NetworkItem]:
        """
        Write the next unapplied received item into the game.

        Returns:
            The delivered item, or None if the game is up to date.
        """
        session = self.session_state.session
        if session is None:
            return None

        _, applied = unpack_u16_pair(await self.device.read(RECV_QUEUE_COUNTERS, 4))
        queue = self.session_state.received_items
        if len(queue) <= applied:
            return None

        item = queue[applied]
        item_id = item.item - ITEMS_START_ID
        player_index = device_player_index(item.player, session.player_count)

        await self.device.write(
            RECV_QUEUE_START + applied * RECV_RECORD_SIZE,
            pack_u16(player_index) + pack_u16(item_id)
        )
        await self.device.write(RECV_QUEUE_WCOUNT, pack_u16(applied + 1))
        self.stats.items_delivered += 1

        if self.cache is not None:
            logger.info(
                f"[WATCHER] Received {self.cache.item_name(item.item)} from "
                f"{session.player_name(item.player)} ({applied + 1}/{len(queue)})"
            )
        return item

    def _location_names(self, location_ids: List[int]) -> str:
        if self.cache is None:
            return ", ".join(str(i) for i in location_ids)
        return ", ".join(self.cache.location_name(i) for i in location_ids)
