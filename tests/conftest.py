"""Stand-ins for the bleak scanner and client, so tests never touch a radio."""

import asyncio
from types import SimpleNamespace
from typing import List, Optional

import pytest
from bleak.exc import BleakError

from bluereceipt.printer import PRINTER_CHARACTERISTIC, PRINTER_SERVICE, Printer
from bluereceipt.store import SavedDeviceStore

PRINTER_ADDRESS = "AA:BB:CC:DD:EE:FF"
NOTIFY_CHARACTERISTIC = "49535343-1e4d-4bd9-ba61-23c647249616"


def advertisement(address, name=None, rssi=-60, services=()):
    device = SimpleNamespace(address=address, name=name)
    adv = SimpleNamespace(local_name=name, rssi=rssi, service_uuids=list(services))
    return device, adv


def characteristic(uuid, *properties):
    return SimpleNamespace(uuid=uuid, properties=list(properties))


def printer_service(uuid=PRINTER_SERVICE, characteristics=None):
    if characteristics is None:
        characteristics = [
            characteristic(PRINTER_CHARACTERISTIC, "write", "write-without-response"),
            characteristic(NOTIFY_CHARACTERISTIC, "notify"),
        ]
    return SimpleNamespace(uuid=uuid, characteristics=characteristics)


class FakeScanner:
    def __init__(self, ble, detection_callback):
        self.ble = ble
        self.callback = detection_callback
        self.running = False

    async def start(self):
        self.running = True
        self.ble.scans += 1
        loop = asyncio.get_running_loop()
        for device, adv in self.ble.devices:
            loop.call_soon(self._report, device, adv)

    def _report(self, device, adv):
        if self.running:
            self.callback(device, adv)

    async def stop(self):
        self.running = False


class FakeClient:
    def __init__(self, ble, device, disconnected_callback=None):
        self.ble = ble
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.services = ble.services
        self.is_connected = False
        self.connect_calls = 0
        self.notifying: List[str] = []
        self.disconnected = False

    async def connect(self):
        self.connect_calls += 1
        if self.ble.connect_failures > 0:
            self.ble.connect_failures -= 1
            raise BleakError("connection refused")
        self.is_connected = True

    async def start_notify(self, char, callback):
        self.notifying.append(char.uuid)

    async def stop_notify(self, uuid):
        self.notifying.remove(uuid)

    async def write_gatt_char(self, char, data, response=False):
        if self.ble.fail_after is not None and len(self.ble.writes) >= self.ble.fail_after:
            raise BleakError("write failed")
        self.ble.writes.append(bytes(data))
        self.ble.responses.append(response)

    async def disconnect(self):
        self.is_connected = False
        self.disconnected = True
        if self.disconnected_callback:
            self.disconnected_callback(self)

    def lose_link(self):
        self.is_connected = False
        if self.disconnected_callback:
            self.disconnected_callback(self)


class FakeBle:
    """Shared state behind the fake scanner and clients."""

    def __init__(self):
        self.devices = [advertisement(PRINTER_ADDRESS, "YHK-7887", services=[PRINTER_SERVICE])]
        self.services = [printer_service()]
        self.clients: List[FakeClient] = []
        self.scans = 0
        self.connect_failures = 0
        self.fail_after: Optional[int] = None  # writes allowed before every write fails
        self.writes: List[bytes] = []
        self.responses: List[bool] = []

    def scanner(self, detection_callback):
        return FakeScanner(self, detection_callback)

    def client(self, device, disconnected_callback=None):
        client = FakeClient(self, device, disconnected_callback)
        self.clients.append(client)
        return client

    @property
    def data(self) -> bytes:
        return b"".join(self.writes)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def ble():
    return FakeBle()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def store(tmp_path):
    return SavedDeviceStore(tmp_path / "saved_printer.json")


@pytest.fixture
def make_printer(ble, sleeps, store):
    def make(**kwargs):
        options = dict(
            connect_timeout=0.05,
            chunk_delay=0,
            store=store,
            scanner_factory=ble.scanner,
            client_factory=ble.client,
            sleep=sleeps,
        )
        options.update(kwargs)
        return Printer(**options)

    return make
