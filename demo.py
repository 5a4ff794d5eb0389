import argparse
import asyncio

from bluereceipt.config import Settings
from bluereceipt.logging_config import setup_logging
from bluereceipt.service import PrinterService


async def scan(args: argparse.Namespace):
    settings = Settings.from_env()
    settings.scan_window = args.timeout
    service = PrinterService.from_settings(settings)

    print('Scanning...')
    for device in await service.scan():
        print(f"{device.id}  {device.name or 'Unknown'}  RSSI {device.rssi}  {device.services}")

    if not args.connect:
        return
    if not await service.connect(args.connect):
        print(f'Could not connect to {args.connect}')
        return
    try:
        if args.print:
            await service.print_text(args.print)
            print('Printed.')
    finally:
        await service.close()


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Scan for BLE printers.')
    parser.add_argument('--timeout', type=float, default=10, help='seconds to scan')
    parser.add_argument('--connect', metavar='ID', help='device id to connect to after scanning')
    parser.add_argument('--print', metavar='TEXT', help='text to print once connected')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args()
    setup_logging('DEBUG' if args.verbose else 'WARNING')
    asyncio.run(scan(args))
