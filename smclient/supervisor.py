"""
Reconnect Supervisor
Bounded, delayed reconnection to the session server after a socket close.
"""
import asyncio
import logging
from typing import Optional, Set

from protocol.constants import RECONNECT_DELAY, MAX_RECONNECT_ATTEMPTS
from protocol.models import SessionState, DeviceState

from .session import SessionClient, CONNECTION_LOST_MESSAGE

logger = logging.getLogger(__name__)


class ReconnectSupervisor:
    """
    Decides whether and when to reconnect after the session socket closes.

    Each close schedules at most one delayed attempt. Attempts are counted
    until a Connected resets the counter; past the limit the supervisor
    gives up and tells the user.
    """

    def __init__(
        self,
        client: SessionClient,
        session_state: SessionState,
        device_state: DeviceState,
        delay: float = RECONNECT_DELAY,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS
    ):
        """
        Initialize supervisor.

        Args:
            client: Session client to reconnect.
            session_state: Session state (address, password, auth error, attempts).
            device_state: Device state; no device means nothing to resync.
            delay: Seconds to wait before an attempt.
            max_attempts: Consecutive attempts before giving up.
        """
        self.client = client
        self.session_state = session_state
        self.device_state = device_state
        self.delay = delay
        self.max_attempts = max_attempts

        self.enabled = True
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of scheduled attempts not yet run."""
        return len(self._pending)

    def handle_close(self) -> Optional[asyncio.Task]:
        """Socket close hook. Returns the scheduled attempt, if any."""
        if not self.enabled:
            return None

        if not self.device_state.selected:
            logger.debug("[SUPERVISOR] No device selected, not reconnecting")
            return None

        if self.session_state.auth_error:
            logger.info("[SUPERVISOR] Closed after an authentication error, not reconnecting")
            return None

        if not self.session_state.server_address:
            return None

        task = asyncio.create_task(self._retry_later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _retry_later(self):
        await asyncio.sleep(self.delay)
        await self.attempt_reconnect()

    async def attempt_reconnect(self) -> bool:
        """
        One reconnect attempt, subject to the guards.

        Returns:
            True if a connection attempt was made.
        """
        # A user-initiated connection may already have replaced the socket
        if self.client.is_open():
            return False

        if self.session_state.auth_error:
            return False

        self.session_state.reconnect_attempts += 1
        attempts = self.session_state.reconnect_attempts
        if attempts > self.max_attempts:
            logger.warning(f"[SUPERVISOR] Giving up after {self.max_attempts} attempts")
            self.client.console(CONNECTION_LOST_MESSAGE)
            return False

        self.client.console(
            f"Connection to server lost. Attempting to reconnect ({attempts} of {self.max_attempts})"
        )
        await self.client.connect(self.session_state.server_address, self.session_state.password)
        return True

    def cancel(self):
        """Cancel scheduled attempts."""
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
