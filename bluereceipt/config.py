"""Settings for the print server, read from the environment (and a .env file)."""

import os
import sys
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

from bluereceipt.printer import (
    BYTES_PER_SEND,
    CMD_DELAY,
    CONNECT_ATTEMPTS,
    DISCOVERY_TIMEOUT,
    PRINTER_CHARACTERISTIC,
    PRINTER_SERVICE,
    SCAN_WINDOW,
)


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    service_uuid: str = PRINTER_SERVICE
    characteristic_uuid: str = PRINTER_CHARACTERISTIC

    scan_window: float = SCAN_WINDOW
    connect_timeout: float = DISCOVERY_TIMEOUT
    connect_attempts: int = CONNECT_ATTEMPTS
    chunk_size: int = BYTES_PER_SEND
    chunk_delay: float = CMD_DELAY
    job_delay: float = 0.5  # seconds between print jobs
    probe_settle: float = 0.1  # seconds to wait after the status test print

    saved_printer_file: str = "saved_printer.json"
    adapter_reset: bool = sys.platform.startswith("linux")
    adapter_name: str = "hci0"
    reconnect_on_startup: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        load_dotenv(find_dotenv(usecwd=True))
        env = os.environ
        defaults = cls()
        return cls(
            host=env.get("HOST", defaults.host),
            port=int(env.get("PORT", defaults.port)),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
            service_uuid=env.get("PRINTER_SERVICE_UUID", defaults.service_uuid),
            characteristic_uuid=env.get(
                "PRINTER_CHARACTERISTIC_UUID", defaults.characteristic_uuid
            ),
            scan_window=float(env.get("SCAN_WINDOW", defaults.scan_window)),
            connect_timeout=float(env.get("CONNECT_TIMEOUT", defaults.connect_timeout)),
            connect_attempts=int(env.get("CONNECT_ATTEMPTS", defaults.connect_attempts)),
            chunk_size=int(env.get("CHUNK_SIZE", defaults.chunk_size)),
            chunk_delay=float(env.get("CHUNK_DELAY", defaults.chunk_delay)),
            job_delay=float(env.get("JOB_DELAY", defaults.job_delay)),
            probe_settle=float(env.get("PROBE_SETTLE", defaults.probe_settle)),
            saved_printer_file=env.get("SAVED_PRINTER_FILE", defaults.saved_printer_file),
            adapter_reset=_flag(env["ADAPTER_RESET"])
            if "ADAPTER_RESET" in env
            else defaults.adapter_reset,
            adapter_name=env.get("ADAPTER_NAME", defaults.adapter_name),
            reconnect_on_startup=_flag(env.get("RECONNECT_ON_STARTUP", "0")),
        )
