"""
Device Bridge - SNI (usb2snes protocol) memory access
Exposes the running game as a byte-addressable memory region.
"""
import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any, Iterator

import websockets
from websockets.exceptions import WebSocketException
from websockets.protocol import State

from protocol.constants import (
    DEFAULT_SNI_ADDRESS,
    DEVICE_ADDRESS_SPACE,
    DEVICE_REQUEST_TIMEOUT,
    CLIENT_TAGS,
)

from .errors import DeviceUnavailable

logger = logging.getLogger(__name__)


@contextmanager
def _device_errors(action: str) -> Iterator[None]:
    """Translate transport failures into DeviceUnavailable."""
    try:
        yield
    except DeviceUnavailable:
        raise
    except asyncio.TimeoutError as e:
        raise DeviceUnavailable(f"Timed out during {action}") from e
    except (WebSocketException, OSError) as e:
        raise DeviceUnavailable(f"{action} failed: {e}") from e


class DeviceBridge:
    """
    Memory bridge to a SNES device through SNI's usb2snes websocket.

    One request is in flight at a time. No retries happen here; callers
    decide what to do with DeviceUnavailable.
    """

    def __init__(
        self,
        address: str = DEFAULT_SNI_ADDRESS,
        request_timeout: float = DEVICE_REQUEST_TIMEOUT
    ):
        """
        Initialize device bridge.

        Args:
            address: SNI websocket address.
            request_timeout: Seconds to wait for a reply before giving up.
        """
        self.address = address if "://" in address else f"ws://{address}"
        self.request_timeout = request_timeout

        self.websocket = None
        self.device: Optional[str] = None
        self._request_lock = asyncio.Lock()

    def is_open(self) -> bool:
        """Check if the SNI socket is open."""
        return self.websocket is not None and self.websocket.state is State.OPEN

    @property
    def attached(self) -> bool:
        return self.device is not None and self.is_open()

    async def connect(self):
        """Open the SNI websocket."""
        if self.is_open():
            return
        logger.info(f"[DEVICE] Connecting to SNI at {self.address}...")
        with _device_errors("connect"):
            self.websocket = await websockets.connect(
                self.address,
                open_timeout=self.request_timeout,
                ping_interval=None,
                ping_timeout=None,
                max_size=None
            )

    async def close(self):
        """Close the SNI socket and forget the attached device."""
        self.device = None
        websocket, self.websocket = self.websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"[DEVICE] Error while closing: {e}")

    async def _send_request(self, opcode: str, operands: Optional[List[str]] = None, space: bool = True):
        if not self.is_open():
            raise DeviceUnavailable("SNI connection is not open")
        request: Dict[str, Any] = {"Opcode": opcode}
        if space:
            request["Space"] = DEVICE_ADDRESS_SPACE
        if operands is not None:
            request["Operands"] = operands
        await self.websocket.send(json.dumps(request))

    async def _recv(self):
        return await asyncio.wait_for(self.websocket.recv(), self.request_timeout)

    async def _query(self, opcode: str, space: bool = True) -> List[str]:
        async with self._request_lock:
            with _device_errors(opcode):
                await self._send_request(opcode, space=space)
                reply = await self._recv()
        if isinstance(reply, bytes):
            raise DeviceUnavailable(f"Unexpected binary reply to {opcode}")
        try:
            return json.loads(reply).get("Results", [])
        except (json.JSONDecodeError, AttributeError) as e:
            raise DeviceUnavailable(f"Malformed reply to {opcode}: {reply!r}") from e

    async def app_version(self) -> str:
        """Name and version of the usb2snes endpoint."""
        results = await self._query("AppVersion", space=False)
        return results[0] if results else ""

    async def list_devices(self) -> List[str]:
        """Devices SNI can see."""
        return await self._query("DeviceList")

    async def attach(self, device: str):
        """Attach to a device; subsequent reads/writes target it."""
        async with self._request_lock:
            with _device_errors("attach"):
                await self._send_request("Attach", [device])
                await self._send_request("Name", [CLIENT_TAGS[0]])
        self.device = device
        logger.info(f"[DEVICE] Attached to {device}")

    async def discover(self, preferred: Optional[str] = None) -> str:
        """
        Connect to SNI and attach to a device.

        Args:
            preferred: Device name to attach to; first device if None or absent.

        Returns:
            Name of the attached device.
        """
        await self.connect()
        app = await self.app_version()
        if app and "SNI" not in app:
            logger.warning(f"[DEVICE] Expected SNI, found {app}")

        devices = await self.list_devices()
        if not devices:
            raise DeviceUnavailable("No SNES device found")

        device = preferred if preferred in devices else devices[0]
        if preferred and preferred not in devices:
            logger.warning(f"[DEVICE] {preferred} not found, using {device}")
        await self.attach(device)
        return device

    async def read(self, address: int, length: int) -> bytes:
        """
        Read a byte range from device memory.

        Args:
            address: Address in the SNES address space.
            length: Number of bytes.

        Returns:
            Exactly `length` bytes.
        """
        async with self._request_lock:
            with _device_errors(f"read {address:#08x}"):
                await self._send_request("GetAddress", [format(address, "X"), format(length, "X")])
                data = b""
                while len(data) < length:
                    chunk = await self._recv()
                    if not isinstance(chunk, bytes):
                        raise DeviceUnavailable(f"Unexpected text reply while reading {address:#08x}")
                    data += chunk

        if len(data) != length:
            raise DeviceUnavailable(
                f"Read {address:#08x}: requested {length} bytes, received {len(data)}"
            )
        return data

    async def write(self, address: int, data: bytes) -> bool:
        """
        Write a byte range to device memory.

        Args:
            address: Address in the SNES address space.
            data: Bytes to write.
        """
        async with self._request_lock:
            with _device_errors(f"write {address:#08x}"):
                await self._send_request("PutAddress", [format(address, "X"), format(len(data), "X")])
                await self.websocket.send(bytes(data))
        return True
