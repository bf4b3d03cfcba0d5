from __future__ import annotations

import enum
import re
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from .constants import (
    CMD_DOWNLOAD,
    CMD_LIST,
    CMD_UPLOAD,
    COMMAND_LEN,
    FILENAME_LEN_FORMAT,
    MAX_FILENAME_LEN,
    SIZE_ERROR_MARKER,
    SIZE_FRAME_LEN,
)
from .errors import ConfigError, MalformedFrame, MalformedSizeFrame

_DIGITS = re.compile(rb"[0-9]+")
_ENTRY = re.compile(r"^(?P<name>.*) \((?P<size>[0-9]+) bytes\)$")
_FORBIDDEN_NAME_CHARS = frozenset("/\\\x00\r\n")
_MAX_SIZE = 2**64


class Command(str, enum.Enum):
    UPLOAD = CMD_UPLOAD
    DOWNLOAD = CMD_DOWNLOAD
    LIST = CMD_LIST


@dataclass(frozen=True, slots=True)
class FileEntry:
    name: str
    size: Optional[int] = None


def encode_command(tag: str | Command) -> bytes:
    text = tag.value if isinstance(tag, Command) else tag
    try:
        raw = text.encode("ascii")
    except UnicodeEncodeError:
        raise ConfigError(f"command tag must be ASCII: {text!r}") from None
    if not raw:
        raise ConfigError("command tag must not be empty")
    if len(raw) > COMMAND_LEN:
        raise ConfigError(f"command tag {text!r} exceeds {COMMAND_LEN} bytes")
    return raw.ljust(COMMAND_LEN, b"\x00")


def decode_command(raw: bytes) -> Command:
    if len(raw) != COMMAND_LEN:
        raise MalformedFrame(f"command frame must be {COMMAND_LEN} bytes, got {len(raw)}")
    tag, _, padding = raw.partition(b"\x00")
    if padding.strip(b"\x00"):
        raise MalformedFrame(f"non-zero padding in command frame: {raw!r}")
    try:
        return Command(tag.decode("ascii"))
    except (UnicodeDecodeError, ValueError):
        raise MalformedFrame(f"unknown command tag: {tag!r}") from None


def encode_size(size: int) -> bytes:
    if size < 0 or size >= _MAX_SIZE:
        raise ConfigError(f"size out of range: {size}")
    return str(size).encode("ascii").ljust(SIZE_FRAME_LEN, b" ")


def encode_size_error() -> bytes:
    return SIZE_ERROR_MARKER.encode("ascii").ljust(SIZE_FRAME_LEN, b" ")


def decode_size(raw: bytes) -> Tuple[int, bool]:
    """Parse a size frame into ``(size, is_error)``.

    Surrounding ASCII whitespace is ignored. A frame containing the error
    marker reports ``is_error`` with a size of 0.
    """
    text = raw.strip(b" \t\r\n\x0b\x0c")
    if SIZE_ERROR_MARKER.encode("ascii") in text:
        return 0, True
    if not _DIGITS.fullmatch(text):
        raise MalformedSizeFrame(f"size frame is not a decimal number: {raw!r}")
    size = int(text)
    if size >= _MAX_SIZE:
        raise MalformedSizeFrame(f"size frame out of range: {raw!r}")
    return size, False


def validate_filename(name: str) -> bytes:
    if name in ("", ".", ".."):
        raise ConfigError(f"invalid filename: {name!r}")
    bad = _FORBIDDEN_NAME_CHARS.intersection(name)
    if bad:
        raise ConfigError(f"filename {name!r} contains forbidden characters {sorted(bad)!r}")
    try:
        raw = name.encode("utf-8")
    except UnicodeEncodeError:
        raise ConfigError(f"filename is not valid UTF-8: {name!r}") from None
    if len(raw) > MAX_FILENAME_LEN:
        raise ConfigError(f"filename exceeds {MAX_FILENAME_LEN} bytes: {name!r}")
    return raw


def encode_filename(name: str) -> bytes:
    raw = validate_filename(name)
    return struct.pack(FILENAME_LEN_FORMAT, len(raw)) + raw


async def read_filename(stream) -> str:
    """Read a length-prefixed filename field from ``stream``."""
    prefix_len = struct.calcsize(FILENAME_LEN_FORMAT)
    prefix = await stream.read_exactly(prefix_len)
    if len(prefix) != prefix_len:
        raise MalformedFrame("stream ended inside filename length")

    (length,) = struct.unpack(FILENAME_LEN_FORMAT, prefix)
    if length == 0 or length > MAX_FILENAME_LEN:
        raise MalformedFrame(f"filename length out of range: {length}")

    raw = await stream.read_exactly(length)
    if len(raw) != length:
        raise MalformedFrame(f"stream ended inside filename ({len(raw)}/{length} bytes)")
    try:
        name = raw.decode("utf-8")
        validate_filename(name)
    except (UnicodeDecodeError, ConfigError) as exc:
        raise MalformedFrame(f"invalid filename field: {raw!r}") from exc
    return name


def format_entry(name: str, size: int) -> str:
    return f"{name} ({size} bytes)"


def parse_listing(text: str) -> Tuple[FileEntry, ...]:
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        m = _ENTRY.match(line)
        if m:
            entries.append(FileEntry(m.group("name"), int(m.group("size"))))
        else:
            entries.append(FileEntry(line.strip()))
    return tuple(entries)
