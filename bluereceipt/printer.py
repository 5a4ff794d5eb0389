import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from bluereceipt.protocol import Segment, chunked, cmd_char_table, cmd_init

logger = logging.getLogger(__name__)


PRINTER_SERVICE = "49535343-fe7d-4ae5-8fa9-9fafd205e455"  # vendor UART service
PRINTER_CHARACTERISTIC = "49535343-8841-43f4-a8d4-ecbe34729bb3"  # write endpoint
SCAN_WINDOW = 10  # seconds to list nearby devices
DISCOVERY_TIMEOUT = 15  # seconds to find a specific printer before connecting
BYTES_PER_SEND = 20  # max number of bytes in each characteristic write
CMD_DELAY = 0.05  # seconds between characteristic writes
CONNECT_ATTEMPTS = 5  # number of times to try and connect to a printer before aborting

WRITE_PROPERTIES = ("write", "write-without-response")
READ_PROPERTIES = ("read", "notify")

# Failures a characteristic write can surface, depending on the bleak backend.
WRITE_ERRORS = (BleakError, OSError, asyncio.TimeoutError, EOFError)


class SessionState(enum.Enum):
    Disconnected = "disconnected"
    Connecting = "connecting"
    Connected = "connected"


@dataclass
class DeviceDescriptor:
    """A device seen during a scan."""

    id: str
    name: Optional[str]
    address: str
    rssi: Optional[int]
    services: List[str] = field(default_factory=list)

    @classmethod
    def from_advertisement(
        cls, device: BLEDevice, advertisement: AdvertisementData
    ) -> "DeviceDescriptor":
        return cls(
            id=device.address,
            name=advertisement.local_name or device.name,
            address=device.address,
            rssi=advertisement.rssi,
            services=list(advertisement.service_uuids or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "rssi": self.rssi,
            "services": self.services,
        }


def normalize_id(device_id: str) -> str:
    """Compare device ids regardless of case and separators (AA:BB vs aabb)."""
    return device_id.replace(":", "").replace("-", "").lower()


def normalize_uuid(uuid: str) -> str:
    return uuid.replace("-", "").lower()


def find_service(
    services: Iterable[BleakGATTService], uuid: str
) -> Optional[BleakGATTService]:
    """Find a service by UUID, with or without dashes."""
    wanted = normalize_uuid(uuid)
    for service in services:
        if normalize_uuid(service.uuid) == wanted:
            return service
    return None


def find_write_characteristic(
    service: BleakGATTService, uuid: str
) -> Optional[BleakGATTCharacteristic]:
    """Find the write characteristic by UUID, else the first writable one."""
    wanted = normalize_uuid(uuid)
    for char in service.characteristics:
        if normalize_uuid(char.uuid) == wanted:
            return char
    for char in service.characteristics:
        if any(prop in char.properties for prop in WRITE_PROPERTIES):
            return char
    return None


def find_read_characteristic(
    service: BleakGATTService,
) -> Optional[BleakGATTCharacteristic]:
    for char in service.characteristics:
        if any(prop in char.properties for prop in READ_PROPERTIES):
            return char
    return None


class WriteChannel:
    """The characteristic print data is written to."""

    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic):
        self.client = client
        self.characteristic = characteristic
        # Prefer acknowledged writes when the printer offers them.
        self.response = "write" in characteristic.properties

    @property
    def uuid(self) -> str:
        return self.characteristic.uuid

    async def write(self, data: bytes):
        await self.client.write_gatt_char(self.characteristic, data, response=self.response)


async def send_packets(
    channel: WriteChannel,
    data: bytes,
    chunk_size: int = BYTES_PER_SEND,
    delay: float = CMD_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """Write data in chunks small enough for the printer, pausing after each.

    The first failing chunk aborts the rest of the buffer.
    """
    chunks = chunked(bytes(data), chunk_size)
    logger.debug("Writing %d chunks to printer", len(chunks))
    for index, chunk in enumerate(chunks):
        try:
            await channel.write(chunk)
        except WRITE_ERRORS as e:
            logger.error("Error writing chunk %d of %d: %s", index + 1, len(chunks), e)
            raise TransportError(f"Write failed on chunk {index + 1} of {len(chunks)}: {e}") from e
        await sleep(delay)


class Printer:
    """The one BLE session with the printer.

    Owns discovery, the connection, the resolved characteristics and the
    state machine Disconnected -> Connecting -> Connected -> Disconnected.
    """

    def __init__(
        self,
        service_uuid: str = PRINTER_SERVICE,
        characteristic_uuid: str = PRINTER_CHARACTERISTIC,
        *,
        connect_timeout: float = DISCOVERY_TIMEOUT,
        connect_attempts: int = CONNECT_ATTEMPTS,
        chunk_size: int = BYTES_PER_SEND,
        chunk_delay: float = CMD_DELAY,
        store=None,
        adapter: Optional[Callable[[], Awaitable[Any]]] = None,
        scanner_factory: Callable[..., BleakScanner] = BleakScanner,
        client_factory: Callable[..., BleakClient] = BleakClient,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.service_uuid = service_uuid
        self.characteristic_uuid = characteristic_uuid
        self.connect_timeout = connect_timeout
        self.connect_attempts = connect_attempts
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.store = store
        self.adapter = adapter
        self._scanner_factory = scanner_factory
        self._client_factory = client_factory
        self._sleep = sleep

        self.state = SessionState.Disconnected
        self.device_id: Optional[str] = None
        self.client: Optional[BleakClient] = None
        self.channel: Optional[WriteChannel] = None
        self.notify_uuid: Optional[str] = None

        self._connect_lock = asyncio.Lock()
        self._scan_lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.Connected and self.channel is not None

    def on_disconnect(self, client: BleakClient):
        if client is not self.client:
            return
        logger.warning("Printer %s disconnected", self.device_id)
        self._reset()

    def on_notify(self, sender, data: bytearray):
        logger.debug("Notify: %s: %s", sender, bytes(data).hex())

    async def scan(self, timeout: float = SCAN_WINDOW) -> List[DeviceDescriptor]:
        """List the devices advertising within timeout seconds, in discovery order."""
        if self.adapter is not None:
            await self.adapter()

        found: asyncio.Queue = asyncio.Queue()

        def detection_callback(device: BLEDevice, advertisement: AdvertisementData):
            found.put_nowait(DeviceDescriptor.from_advertisement(device, advertisement))

        async with self._scan_lock:
            scanner = self._scanner_factory(detection_callback=detection_callback)
            await scanner.start()
            logger.info("Scan started")
            try:
                await self._sleep(timeout)
            finally:
                await scanner.stop()
                logger.info("Scan stopped")

        devices = []
        while not found.empty():
            devices.append(found.get_nowait())
        logger.info("Found %d devices", len(devices))
        return devices

    async def _discover(self, device_id: str) -> BLEDevice:
        wanted = normalize_id(device_id)
        found: asyncio.Queue = asyncio.Queue()

        def detection_callback(device: BLEDevice, _: AdvertisementData):
            if normalize_id(device.address) == wanted:
                found.put_nowait(device)

        async with self._scan_lock:
            scanner = self._scanner_factory(detection_callback=detection_callback)
            logger.info("Starting printer discovery...")
            await scanner.start()
            try:
                return await asyncio.wait_for(found.get(), self.connect_timeout)
            except asyncio.TimeoutError:
                raise DiscoveryTimeoutError(
                    f"Printer {device_id} not found within {self.connect_timeout}s"
                ) from None
            finally:
                await scanner.stop()

    async def connect(self, device_id: str) -> bool:
        """Connect to the printer with the given id.

        Never raises for connection problems: they are logged and reported as
        False, and the session is left Disconnected.
        """
        async with self._connect_lock:
            if self.is_connected:
                if normalize_id(self.device_id) == normalize_id(device_id):
                    return True
                await self._teardown()

            self.state = SessionState.Connecting
            self.device_id = device_id
            try:
                await self._open(device_id)
            except (PrinterError, BleakError, asyncio.TimeoutError, OSError) as e:
                logger.error("Connection error: %s", e)
            finally:
                if self.state is not SessionState.Connected:
                    await self._teardown()

            if not self.is_connected:
                return False

            logger.info("Connected to printer %s", device_id)
            if self.store is not None:
                self.store.save(device_id)
            return True

    async def _open(self, device_id: str):
        device = await self._discover(device_id)
        await self._ensure_current(None)

        logger.info("Connecting to printer...")
        client = self._client_factory(device, disconnected_callback=self.on_disconnect)
        self.client = client

        attempt = 0
        while attempt < self.connect_attempts:
            try:
                await client.connect()
                break
            except (BleakError, asyncio.TimeoutError) as e:
                attempt += 1
                logger.warning(
                    "Connection attempt %d of %d failed: %s", attempt, self.connect_attempts, e
                )
        await self._ensure_current(client)
        if not client.is_connected:
            raise PrinterError("Failed to connect to printer")

        services = list(client.services)
        service = find_service(services, self.service_uuid)
        if service is None:
            raise ServiceNotFoundError(
                "Printer service not found. Available services: "
                + ", ".join(s.uuid for s in services)
            )
        logger.info("Found service: %s", service.uuid)

        write_char = find_write_characteristic(service, self.characteristic_uuid)
        if write_char is None:
            raise CharacteristicNotFoundError(
                "Write characteristic not found. Available characteristics: "
                + ", ".join(f"{c.uuid} {c.properties}" for c in service.characteristics)
            )
        self.channel = WriteChannel(client, write_char)
        logger.info("Found write characteristic: %s", write_char.uuid)

        read_char = find_read_characteristic(service)
        if read_char is None:
            logger.info("No read characteristic found - status checking will be limited")
        elif "notify" in read_char.properties:
            try:
                await client.start_notify(read_char, self.on_notify)
                self.notify_uuid = read_char.uuid
                logger.info("Subscribed to %s", read_char.uuid)
            except BleakError as e:
                logger.warning("Could not subscribe to %s: %s", read_char.uuid, e)
            await self._ensure_current(client)

        await self.send(cmd_init())
        await self.send(cmd_char_table())
        await self._ensure_current(client)
        self.state = SessionState.Connected

    async def _ensure_current(self, client: Optional[BleakClient]):
        """Abort a connect whose session was dropped or disconnected meanwhile."""
        if self.client is client and self.state is SessionState.Connecting:
            return
        if client is not None and client.is_connected:
            try:
                await client.disconnect()
            except (BleakError, asyncio.TimeoutError, OSError) as e:
                logger.warning("Error while disconnecting: %s", e)
        raise PrinterError("Connection lost while connecting")

    async def disconnect(self):
        """Close the connection. Does nothing when already disconnected."""
        if self.client is None and self.state is SessionState.Disconnected:
            return
        logger.info("Disconnecting from printer %s", self.device_id)
        await self._teardown()

    async def _teardown(self):
        client, notify_uuid = self.client, self.notify_uuid
        self._reset()
        if client is None:
            return
        try:
            if notify_uuid and client.is_connected:
                await client.stop_notify(notify_uuid)
            await client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Error while disconnecting: %s", e)

    def _reset(self):
        self.state = SessionState.Disconnected
        self.device_id = None
        self.client = None
        self.channel = None
        self.notify_uuid = None

    async def send(self, data: bytes):
        if self.channel is None:
            raise NotConnectedError()
        await send_packets(self.channel, data, self.chunk_size, self.chunk_delay, self._sleep)

    async def pause(self, seconds: float):
        await self._sleep(seconds)

    async def write_segments(self, segments: Iterable[Segment]):
        """Send each segment in order, pausing for its settle time."""
        for segment in segments:
            await self.send(segment.data)
            if segment.settle:
                await self.pause(segment.settle)


class PrinterError(Exception):
    pass


class NotConnectedError(PrinterError):
    def __init__(self, message: str = "Printer not connected"):
        super().__init__(message)


class DiscoveryTimeoutError(PrinterError):
    pass


class ServiceNotFoundError(PrinterError):
    pass


class CharacteristicNotFoundError(PrinterError):
    pass


class TransportError(PrinterError):
    pass


class PaperOutError(PrinterError):
    def __init__(self, message: str = "Printer is out of paper or not ready"):
        super().__init__(message)


class PrintJobError(PrinterError):
    pass
