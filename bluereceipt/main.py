import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

import uvicorn
from bleak.exc import BleakError
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bluereceipt.config import Settings
from bluereceipt.logging_config import setup_logging
from bluereceipt.printer import PaperOutError, PrinterError
from bluereceipt.protocol import Item, Receipt
from bluereceipt.service import PrinterService

logger = logging.getLogger(__name__)


class ConnectRequest(BaseModel):
    device_id: Optional[str] = Field(None, alias="deviceId")


class TextPrintRequest(BaseModel):
    device_id: Optional[str] = Field(None, alias="deviceId")
    text: Optional[str] = None


class ReceiptItem(BaseModel):
    name: str
    price: str


class ReceiptPrintRequest(BaseModel):
    device_id: Optional[str] = Field(None, alias="deviceId")
    title: Optional[str] = None
    items: Optional[List[ReceiptItem]] = None
    total: Optional[Decimal] = None
    school_name: Optional[str] = Field(None, alias="schoolName")
    footer: Optional[str] = None
    sale_date: Optional[str] = Field(None, alias="saleDate")

    def to_receipt(self) -> Receipt:
        return Receipt(
            title=self.title,
            items=tuple(Item(i.name, i.price) for i in self.items or []),
            total=self.total,
            school_name=self.school_name,
            footer=self.footer,
            sale_date=self.sale_date,
        )


def error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    settings: Optional[Settings] = None, service: Optional[PrinterService] = None
) -> FastAPI:
    settings = settings or Settings.from_env()
    service = service or PrinterService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reconnect = None
        saved = service.saved_device_id()
        if saved:
            logger.info("Last used printer: %s", saved)
            if settings.reconnect_on_startup:
                reconnect = asyncio.create_task(service.connect(saved))
        yield
        if reconnect is not None and not reconnect.done():
            reconnect.cancel()
        await service.close()

    app = FastAPI(title="bluereceipt", lifespan=lifespan)
    app.state.service = service
    app.add_middleware(
        CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return error(400, f"Invalid request: {exc.errors()}")

    @app.exception_handler(PaperOutError)
    async def paper_out(request: Request, exc: PaperOutError):
        logger.error("Print error: %s", exc)
        return error(503, "Printer is out of paper")

    @app.exception_handler(PrinterError)
    async def printer_error(request: Request, exc: PrinterError):
        logger.error("Printer error: %s", exc)
        return error(500, str(exc))

    @app.exception_handler(BleakError)
    async def bluetooth_error(request: Request, exc: BleakError):
        logger.error("Bluetooth error: %s", exc)
        return error(500, str(exc))

    @app.get("/devices")
    async def devices_ep():
        """Scan for nearby devices."""
        devices = await service.scan()
        return [d.to_dict() for d in devices]

    @app.post("/connect")
    async def connect_ep(body: ConnectRequest):
        if not body.device_id:
            return error(400, "Device ID is required")
        success = await service.connect(body.device_id)
        return {"success": success}

    @app.post("/print/text")
    async def print_text_ep(body: TextPrintRequest):
        if not body.device_id or not body.text:
            return error(400, "Device ID and text are required")
        if not await service.ensure_connected(body.device_id):
            return error(500, "Failed to connect to printer")
        success = await service.print_text(body.text)
        return {"success": bool(success)}

    @app.post("/print/receipt")
    async def print_receipt_ep(body: ReceiptPrintRequest):
        if not body.device_id or not body.title or body.items is None or body.total is None:
            return error(400, "Device ID, title, items, and total are required")
        if not await service.ensure_connected(body.device_id):
            return error(500, "Failed to connect to printer")
        success = await service.print_receipt(body.to_receipt())
        return {"success": bool(success)}

    @app.post("/disconnect")
    async def disconnect_ep():
        await service.disconnect()
        return {"success": True}

    return app


app = create_app()


def run():
    """Start the HTTP server."""
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
