from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, NamedTuple, Optional, Sequence


ESC = 0x1B
GS = 0x1D
LF = 0x0A
CR = 0x0D

ITEM_NAME_WIDTH = 20  # columns for an item name
ITEM_PRICE_WIDTH = 10  # columns for an item price
SEPARATOR = "-" * 16 + "\n"
TEXT_FEED_LINES = 5  # lines fed after a plain text print

INIT_SETTLE = 0.2  # seconds to let the printer reset after init
FIELD_SETTLE = 0.1  # seconds between receipt sections
CUT_SETTLE = 0.2  # seconds to let the cutter finish


class Command:
    """ESC/POS commands understood by the printer."""

    Initialize = [ESC, 0x40]
    Align = [ESC, 0x61]  # followed by an Align value
    FeedLines = [ESC, 0x64]  # followed by the number of lines
    Cut = [GS, 0x56, 0x00]
    CharCodeTable = [ESC, 0x74]  # followed by a code table number


class Align:
    """Horizontal alignment for the following lines."""

    Left = 0x00
    Center = 0x01
    Right = 0x02


class CodeTable:
    """Character code tables. The printer's default table passes ASCII through."""

    PC437 = 0x00


class Segment(NamedTuple):
    """One write in a print job."""

    data: bytes
    control: bool  # True for control commands, False for printable text
    settle: float = 0.0  # seconds to pause after the write


@dataclass(frozen=True)
class Item:
    """A line item on a receipt. The price is printed as given."""

    name: str
    price: str


@dataclass(frozen=True)
class Receipt:
    """A receipt to print."""

    title: str
    items: Sequence[Item] = field(default_factory=tuple)
    total: Decimal = Decimal("0")
    school_name: Optional[str] = None
    footer: Optional[str] = None
    sale_date: Optional[str] = None


def cmd_init() -> bytes:
    """Build a command that resets the printer."""
    return bytes(Command.Initialize)


def cmd_align(align: int) -> bytes:
    """Build a command that sets the alignment of the following lines."""
    return bytes(Command.Align + [align])


def cmd_cut() -> bytes:
    """Build a command that cuts the paper."""
    return bytes(Command.Cut)


def cmd_feed(lines: int) -> bytes:
    """Build a command that feeds paper by whole lines."""
    return bytes(Command.FeedLines + [max(0, min(lines, 0xFF))])


def cmd_char_table(table: int = CodeTable.PC437) -> bytes:
    """Build a command that selects the character code table."""
    return bytes(Command.CharCodeTable + [table])


def chunked(data: bytes, size: int) -> List[bytes]:
    """Split data into pieces of at most size bytes."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [data[pos : pos + size] for pos in range(0, len(data), size)]


def format_total(total: Decimal) -> str:
    """Format an amount with two decimals, rounding halves up."""
    return str(Decimal(total).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def format_item(item: Item) -> str:
    """Lay out an item line: name in a fixed column, price right-aligned."""
    name = item.name[:ITEM_NAME_WIDTH].ljust(ITEM_NAME_WIDTH)
    return f"{name}{item.price.rjust(ITEM_PRICE_WIDTH)}\n"


def _text(line: str, settle: float = 0.0) -> Segment:
    return Segment(line.encode("utf-8"), False, settle)


def _control(data: bytes, settle: float = 0.0) -> Segment:
    return Segment(data, True, settle)


def _section(content: str) -> List[Segment]:
    """A centered line followed by a separator."""
    return [
        _control(cmd_align(Align.Center)),
        _text(content + "\n"),
        _text(SEPARATOR, FIELD_SETTLE),
    ]


def encode_preamble() -> List[Segment]:
    """Reset the printer and select the code table."""
    return [
        _control(cmd_init(), INIT_SETTLE),
        _control(cmd_char_table(), FIELD_SETTLE),
    ]


def encode_receipt(receipt: Receipt) -> List[Segment]:
    """Render a receipt into the writes that print it.

    Optional fields that are missing produce no output at all, not even a
    separator.
    """
    segments = encode_preamble()

    if receipt.school_name:
        segments += _section(receipt.school_name)
    segments += _section(receipt.title)
    if receipt.sale_date:
        segments += _section(receipt.sale_date)

    segments.append(_control(cmd_align(Align.Left)))
    for item in receipt.items:
        segments.append(_text(format_item(item), FIELD_SETTLE))

    segments.append(_text(SEPARATOR))
    segments.append(_text(f"Total: R{format_total(receipt.total)}\n", FIELD_SETTLE))

    if receipt.footer:
        segments += [
            _text(SEPARATOR),
            _control(cmd_align(Align.Center)),
            _text(receipt.footer + "\n", FIELD_SETTLE),
        ]

    segments.append(_control(bytes([LF, CR, LF, CR]), FIELD_SETTLE))
    segments.append(_control(cmd_cut(), CUT_SETTLE))
    return segments


def encode_text(text: str) -> List[Segment]:
    """Render plain text, then feed and cut so the print stands apart."""
    return [
        _control(cmd_init()),
        _control(cmd_char_table()),
        _text(text + "\n"),
        _control(cmd_feed(TEXT_FEED_LINES)),
        _control(cmd_cut()),
    ]


def encode_probe() -> List[Segment]:
    """A minimal test print: reset, code table and one blank character."""
    return [
        _control(cmd_init()),
        _control(cmd_char_table()),
        _text(" "),
    ]
