from __future__ import annotations

import asyncio
import struct

import pytest

from qftp.errors import ConfigError, MalformedFrame, MalformedSizeFrame
from qftp.frames import (
    Command,
    FileEntry,
    decode_command,
    decode_size,
    encode_command,
    encode_filename,
    encode_size,
    encode_size_error,
    format_entry,
    parse_listing,
    read_filename,
)
from qftp.transport import Stream


@pytest.mark.parametrize("tag", ["UP", "DOWN", "LIST"])
def test_command_is_ten_bytes_zero_padded(tag):
    raw = encode_command(tag)
    assert len(raw) == 10
    assert raw.startswith(tag.encode())
    assert set(raw[len(tag):]) == {0}


def test_command_accepts_enum():
    assert encode_command(Command.DOWNLOAD) == b"DOWN" + b"\x00" * 6


@pytest.mark.parametrize("tag", ["", "TOOLONGCOMMAND", "ÜP"])
def test_bad_command_tag(tag):
    with pytest.raises(ConfigError):
        encode_command(tag)


def test_decode_command():
    assert decode_command(b"LIST\x00\x00\x00\x00\x00\x00") is Command.LIST
    with pytest.raises(MalformedFrame):
        decode_command(b"NOPE\x00\x00\x00\x00\x00\x00")
    with pytest.raises(MalformedFrame):
        decode_command(b"UP\x00\x00X\x00\x00\x00\x00\x00")
    with pytest.raises(MalformedFrame):
        decode_command(b"UP")


def test_decode_size():
    assert decode_size(b"12345               ") == (12345, False)
    assert decode_size(b"  0\n") == (0, False)
    size, is_error = decode_size(b"ERROR               ")
    assert is_error is True
    assert size == 0


@pytest.mark.parametrize("raw", [b"abc", b"", b"-5", b"+5", b"1_000", b"12 34", str(2**64).encode()])
def test_decode_size_malformed(raw):
    with pytest.raises(MalformedSizeFrame):
        decode_size(raw)


def test_malformed_size_is_a_malformed_frame():
    with pytest.raises(MalformedFrame):
        decode_size(b"abc")


def test_encode_size_frames():
    assert encode_size(42) == b"42" + b" " * 18
    assert decode_size(encode_size(2**64 - 1)) == (2**64 - 1, False)
    assert encode_size_error().strip() == b"ERROR"
    assert len(encode_size_error()) == 20
    with pytest.raises(ConfigError):
        encode_size(-1)


def test_filename_field_is_length_prefixed():
    raw = encode_filename("upload2.txt")
    assert raw[:2] == struct.pack("!H", 11)
    assert raw[2:] == b"upload2.txt"
    assert encode_filename("파일.txt")[2:] == "파일.txt".encode("utf-8")


@pytest.mark.parametrize("name", ["", ".", "..", "a/b", "a\\b", "a\nb", "nul\x00", "x" * 256])
def test_filename_rejected(name):
    with pytest.raises(ConfigError):
        encode_filename(name)


class _Reader:
    def __init__(self, data: bytes):
        self.data = data

    async def readexactly(self, n):
        chunk, self.data = self.data[:n], self.data[n:]
        if len(chunk) < n:
            raise asyncio.IncompleteReadError(chunk, n)
        return chunk


def _read_name(data: bytes) -> str:
    return asyncio.run(read_filename(Stream(_Reader(data), writer=None)))


def test_read_filename():
    assert _read_name(encode_filename("notes.md") + b"content") == "notes.md"


@pytest.mark.parametrize(
    "data",
    [
        b"\x00",
        struct.pack("!H", 0),
        struct.pack("!H", 10) + b"short",
        struct.pack("!H", 300) + b"x" * 300,
        struct.pack("!H", 4) + b"a/bc",
        struct.pack("!H", 2) + b"\xff\xfe",
    ],
)
def test_read_filename_malformed(data):
    with pytest.raises(MalformedFrame):
        _read_name(data)


def test_parse_listing_keeps_server_order():
    text = format_entry("zeta.txt", 3) + "\n" + format_entry("a b (1).txt", 0) + "\n"
    assert parse_listing(text) == (FileEntry("zeta.txt", 3), FileEntry("a b (1).txt", 0))


def test_parse_listing_empty_and_odd_lines():
    assert parse_listing("") == ()
    assert parse_listing("\n") == ()
    assert parse_listing("mystery\n") == (FileEntry("mystery", None),)
