import logging
from typing import List, Optional

from bluereceipt.adapter import AdapterReset, reset_commands
from bluereceipt.config import Settings
from bluereceipt.jobs import JobKind, PrintJob, PrintQueue
from bluereceipt.printer import (
    SCAN_WINDOW,
    DeviceDescriptor,
    NotConnectedError,
    PaperOutError,
    Printer,
)
from bluereceipt.protocol import Receipt, encode_receipt, encode_text
from bluereceipt.status import PrintProbe, StatusProbe
from bluereceipt.store import SavedDeviceStore

logger = logging.getLogger(__name__)


class PrinterService:
    """Everything the HTTP layer needs: the session, the job queue and the probe."""

    def __init__(
        self,
        printer: Printer,
        queue: PrintQueue,
        probe: Optional[StatusProbe] = None,
        scan_window: float = SCAN_WINDOW,
    ):
        self.printer = printer
        self.queue = queue
        self.probe = probe if probe is not None else PrintProbe(printer)
        self.scan_window = scan_window

    @classmethod
    def from_settings(cls, settings: Settings) -> "PrinterService":
        adapter = None
        if settings.adapter_reset:
            adapter = AdapterReset(reset_commands(settings.adapter_name))
        printer = Printer(
            settings.service_uuid,
            settings.characteristic_uuid,
            connect_timeout=settings.connect_timeout,
            connect_attempts=settings.connect_attempts,
            chunk_size=settings.chunk_size,
            chunk_delay=settings.chunk_delay,
            store=SavedDeviceStore(settings.saved_printer_file),
            adapter=adapter,
        )
        return cls(
            printer,
            PrintQueue(job_delay=settings.job_delay),
            PrintProbe(printer, settle=settings.probe_settle),
            scan_window=settings.scan_window,
        )

    @property
    def is_connected(self) -> bool:
        return self.printer.is_connected

    def saved_device_id(self) -> Optional[str]:
        if self.printer.store is None:
            return None
        return self.printer.store.load()

    async def scan(self) -> List[DeviceDescriptor]:
        return await self.printer.scan(self.scan_window)

    async def connect(self, device_id: str) -> bool:
        return await self.printer.connect(device_id)

    async def ensure_connected(self, device_id: str) -> bool:
        """Connect unless a session is already open."""
        if self.printer.is_connected:
            return True
        return await self.printer.connect(device_id)

    async def disconnect(self):
        await self.printer.disconnect()

    async def print_text(self, text: str) -> bool:
        """Queue a plain text print and wait for it to finish."""
        if not self.printer.is_connected:
            raise NotConnectedError()

        async def job():
            await self._check_status()
            logger.info("Starting to print text: %s", text)
            await self.printer.write_segments(encode_text(text))
            logger.info("Finished printing text: %s", text)
            return True

        return await self.queue.enqueue(PrintJob(JobKind.Text, job, label=text[:20]))

    async def print_receipt(self, receipt: Receipt) -> bool:
        """Queue a receipt and wait for it to finish."""
        if not self.printer.is_connected:
            raise NotConnectedError()

        async def job():
            await self._check_status()
            logger.info("Starting to print receipt: %s", receipt.title)
            await self.printer.write_segments(encode_receipt(receipt))
            logger.info("Finished printing receipt: %s", receipt.title)
            return True

        return await self.queue.enqueue(PrintJob(JobKind.Receipt, job, label=receipt.title))

    async def _check_status(self):
        try:
            await self.probe.probe()
        except PaperOutError as e:
            raise PaperOutError("Cannot print: Printer is out of paper") from e

    async def close(self):
        """Shut down: drop queued jobs and disconnect if possible."""
        await self.queue.close()
        await self.printer.disconnect()
