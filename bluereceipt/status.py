import logging
from typing import Protocol

from bluereceipt.printer import NotConnectedError, PaperOutError, Printer, TransportError
from bluereceipt.protocol import encode_probe

logger = logging.getLogger(__name__)

PROBE_SETTLE = 0.1  # seconds to let the printer take the test print


class StatusProbe(Protocol):
    async def probe(self) -> None:
        """Return if the printer can take a job, raise PaperOutError if not."""


class PrintProbe:
    """Checks readiness by printing a single blank character.

    The printer has no paper sensor readback over this link, so a test
    print that fails to write is taken to mean it is out of paper or not
    ready.
    """

    def __init__(self, printer: Printer, settle: float = PROBE_SETTLE):
        self.printer = printer
        self.settle = settle

    async def probe(self) -> None:
        if not self.printer.is_connected:
            raise NotConnectedError()
        try:
            for segment in encode_probe():
                await self.printer.send(segment.data)
        except TransportError as e:
            logger.error("Printer status check failed: %s", e)
            raise PaperOutError() from e
        await self.printer.pause(self.settle)
