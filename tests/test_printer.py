import asyncio

import pytest
from bleak.exc import BleakError

from conftest import (
    NOTIFY_CHARACTERISTIC,
    PRINTER_ADDRESS,
    FakeClient,
    SleepRecorder,
    advertisement,
    characteristic,
    printer_service,
)
from bluereceipt.printer import (
    PRINTER_CHARACTERISTIC,
    NotConnectedError,
    SessionState,
    TransportError,
    WriteChannel,
    normalize_id,
    send_packets,
)
from bluereceipt.protocol import Segment, cmd_char_table, cmd_init


class RecordingChannel:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on  # 1-based chunk number that raises
        self.chunks = []

    async def write(self, data):
        if self.fail_on is not None and len(self.chunks) + 1 == self.fail_on:
            raise BleakError("GATT write failed")
        self.chunks.append(data)


def test_send_packets_writes_chunks_in_order():
    channel = RecordingChannel()
    sleeps = SleepRecorder()
    data = bytes(range(45))

    asyncio.run(send_packets(channel, data, chunk_size=20, delay=0.05, sleep=sleeps))

    assert [len(c) for c in channel.chunks] == [20, 20, 5]
    assert b"".join(channel.chunks) == data
    assert sleeps.calls == [0.05, 0.05, 0.05]


def test_send_packets_aborts_on_failed_chunk():
    channel = RecordingChannel(fail_on=3)
    sleeps = SleepRecorder()

    with pytest.raises(TransportError, match="chunk 3 of 5"):
        asyncio.run(send_packets(channel, bytes(100), chunk_size=20, sleep=sleeps))

    assert len(channel.chunks) == 2
    assert len(sleeps.calls) == 2


def test_write_channel_uses_response_when_supported(ble):
    client = ble.client(None)
    with_response = WriteChannel(client, characteristic("x", "write"))
    without_response = WriteChannel(client, characteristic("y", "write-without-response"))

    asyncio.run(with_response.write(b"a"))
    asyncio.run(without_response.write(b"b"))

    assert ble.responses == [True, False]


def test_send_without_connection(make_printer):
    async def run():
        printer = make_printer()
        with pytest.raises(NotConnectedError):
            await printer.send(b"hello")

    asyncio.run(run())


def test_connect(ble, make_printer, store):
    async def run():
        printer = make_printer()
        assert await printer.connect(PRINTER_ADDRESS)
        return printer

    printer = asyncio.run(run())

    assert printer.state is SessionState.Connected
    assert printer.is_connected
    assert printer.device_id == PRINTER_ADDRESS
    assert printer.channel.uuid == PRINTER_CHARACTERISTIC
    assert printer.notify_uuid == NOTIFY_CHARACTERISTIC
    assert ble.clients[0].notifying == [NOTIFY_CHARACTERISTIC]
    assert ble.writes == [cmd_init(), cmd_char_table()]
    assert store.load() == PRINTER_ADDRESS


def test_connect_matches_id_without_separators(make_printer):
    async def run():
        printer = make_printer()
        return await printer.connect("aabbccddeeff")

    assert asyncio.run(run())
    assert normalize_id("AA:BB:CC:DD:EE:FF") == normalize_id("aa-bb-cc-dd-ee-ff")


def test_connect_unknown_device_times_out(ble, make_printer, store):
    async def run():
        printer = make_printer()
        ok = await printer.connect("11:22:33:44:55:66")
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected
    assert ble.clients == []
    assert store.load() is None


def test_connect_is_idempotent_for_same_device(ble, make_printer):
    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        return await printer.connect(PRINTER_ADDRESS.lower())

    assert asyncio.run(run())
    assert len(ble.clients) == 1


def test_connect_to_other_device_drops_first(ble, make_printer):
    other = "11:22:33:44:55:66"
    ble.devices.append(advertisement(other, "Other"))

    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        await printer.connect(other)
        return printer

    printer = asyncio.run(run())

    assert printer.device_id == other
    assert ble.clients[0].disconnected
    assert not ble.clients[1].disconnected


def test_connect_retries(ble, make_printer):
    ble.connect_failures = 2

    async def run():
        printer = make_printer(connect_attempts=3)
        return await printer.connect(PRINTER_ADDRESS)

    assert asyncio.run(run())
    assert ble.clients[0].connect_calls == 3


def test_connect_gives_up_after_attempts(ble, make_printer):
    ble.connect_failures = 5

    async def run():
        printer = make_printer(connect_attempts=2)
        ok = await printer.connect(PRINTER_ADDRESS)
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected


def test_service_found_without_dashes(ble, make_printer):
    ble.services = [printer_service(uuid="49535343FE7D4AE58FA99FAFD205E455")]

    async def run():
        return await make_printer().connect(PRINTER_ADDRESS)

    assert asyncio.run(run())


def test_service_not_found(ble, make_printer):
    ble.services = [printer_service(uuid="0000180a-0000-1000-8000-00805f9b34fb")]

    async def run():
        printer = make_printer()
        ok = await printer.connect(PRINTER_ADDRESS)
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected
    assert printer.client is None
    assert ble.clients[0].disconnected


def test_write_characteristic_falls_back_to_capability(ble, make_printer):
    fallback = characteristic("0000ff02-0000-1000-8000-00805f9b34fb", "write-without-response")
    ble.services = [
        printer_service(characteristics=[characteristic("0000ff01-0000-1000-8000-00805f9b34fb", "read"), fallback])
    ]

    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        return printer

    printer = asyncio.run(run())

    assert printer.is_connected
    assert printer.channel.characteristic is fallback
    assert printer.channel.response is False
    # A read-only characteristic is not subscribed.
    assert printer.notify_uuid is None


def test_characteristic_not_found(ble, make_printer):
    ble.services = [printer_service(characteristics=[characteristic(NOTIFY_CHARACTERISTIC, "notify")])]

    async def run():
        printer = make_printer()
        ok = await printer.connect(PRINTER_ADDRESS)
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected


def test_warm_up_failure_fails_connect(ble, make_printer):
    ble.fail_after = 0

    async def run():
        printer = make_printer()
        ok = await printer.connect(PRINTER_ADDRESS)
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected
    assert printer.channel is None


def test_disconnect(ble, make_printer):
    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        await printer.disconnect()
        await printer.disconnect()
        return printer

    printer = asyncio.run(run())

    client = ble.clients[0]
    assert client.disconnected
    assert client.notifying == []
    assert printer.state is SessionState.Disconnected
    assert printer.device_id is None
    assert printer.channel is None


def test_disconnect_when_never_connected(make_printer):
    async def run():
        printer = make_printer()
        await printer.disconnect()
        return printer

    assert asyncio.run(run()).state is SessionState.Disconnected


def test_lost_link_resets_session(ble, make_printer):
    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        ble.clients[0].lose_link()
        return printer

    printer = asyncio.run(run())

    assert printer.state is SessionState.Disconnected
    assert not printer.is_connected


def test_link_lost_right_after_connecting(ble, make_printer):
    class DroppingClient(FakeClient):
        async def connect(self):
            await super().connect()
            self.lose_link()

    async def run():
        printer = make_printer(client_factory=lambda device, **kw: DroppingClient(ble, device, **kw))
        ok = await printer.connect(PRINTER_ADDRESS)
        return printer, ok

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected
    assert printer.client is None
    assert ble.writes == []


def test_disconnect_while_connecting(ble, make_printer, store):
    async def run():
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowClient(FakeClient):
            async def connect(self):
                started.set()
                await release.wait()
                await super().connect()

        def client_factory(device, disconnected_callback=None):
            client = SlowClient(ble, device, disconnected_callback)
            ble.clients.append(client)
            return client

        printer = make_printer(client_factory=client_factory)
        connecting = asyncio.ensure_future(printer.connect(PRINTER_ADDRESS))
        await started.wait()
        await printer.disconnect()
        release.set()
        return printer, await connecting

    printer, ok = asyncio.run(run())

    assert ok is False
    assert printer.state is SessionState.Disconnected
    assert not ble.clients[0].is_connected
    assert ble.writes == []
    assert store.load() is None


def test_failed_write_leaves_session_connected(ble, make_printer):
    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        ble.fail_after = len(ble.writes)
        with pytest.raises(TransportError):
            await printer.send(b"x" * 50)
        return printer

    assert asyncio.run(run()).is_connected


def test_scan_lists_devices_in_discovery_order(ble, make_printer, sleeps):
    ble.devices = [
        advertisement("11:11:11:11:11:11", "First", rssi=-40),
        advertisement("22:22:22:22:22:22", None, rssi=-80, services=["af30"]),
        advertisement("11:11:11:11:11:11", "First", rssi=-42),
    ]
    resets = []

    async def adapter():
        resets.append(True)

    async def run():
        printer = make_printer(adapter=adapter)
        return await printer.scan(timeout=0.01)

    devices = asyncio.run(run())

    assert resets == [True]
    assert sleeps.calls == [0.01]
    assert [d.id for d in devices] == [
        "11:11:11:11:11:11",
        "22:22:22:22:22:22",
        "11:11:11:11:11:11",
    ]
    assert devices[1].to_dict() == {
        "id": "22:22:22:22:22:22",
        "name": None,
        "address": "22:22:22:22:22:22",
        "rssi": -80,
        "services": ["af30"],
    }


def test_write_segments_pauses_after_each(ble, make_printer, sleeps):
    async def run():
        printer = make_printer()
        await printer.connect(PRINTER_ADDRESS)
        ble.writes.clear()
        sleeps.calls.clear()
        await printer.write_segments(
            [Segment(b"\x1b\x40", True, 0.2), Segment(b"hello\n", False), Segment(b"bye\n", False, 0.1)]
        )

    asyncio.run(run())

    assert ble.writes == [b"\x1b\x40", b"hello\n", b"bye\n"]
    # chunk pacing (0) after every write, settle times where set
    assert sleeps.calls == [0, 0.2, 0, 0, 0.1]
