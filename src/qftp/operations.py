from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from .constants import DEFAULT_CHUNK_SIZE, READY_TOKEN, SIZE_FRAME_LEN
from .errors import (
    ListFailed,
    LocalIOFailed,
    MalformedSizeFrame,
    RemoteFileNotFound,
    StreamIOFailed,
    StreamOpenFailed,
)
from .frames import Command, FileEntry, decode_size, encode_command, encode_filename, parse_listing

log = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True, slots=True)
class Listing:
    """Successful LIST response; an empty ``entries`` means no remote files."""

    entries: Tuple[FileEntry, ...] = ()
    raw: str = ""

    @property
    def empty(self) -> bool:
        return not self.entries

    def names(self) -> list[str]:
        return [e.name for e in self.entries]

    def __iter__(self) -> Iterator[FileEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class UploadResult:
    name: str
    content_bytes: int
    bytes_written: int  # filename field + content


@dataclass(frozen=True, slots=True)
class DownloadResult:
    name: str
    path: Path
    expected: int
    received: int

    @property
    def complete(self) -> bool:
        return self.received == self.expected

    @property
    def missing(self) -> int:
        return max(0, self.expected - self.received)

    @property
    def surplus(self) -> int:
        return max(0, self.received - self.expected)


async def list_files(session) -> Listing:
    try:
        stream = await session.open_stream()
    except StreamOpenFailed as exc:
        raise ListFailed(f"cannot open list stream: {exc}") from exc

    async with stream:
        try:
            await stream.write(encode_command(Command.LIST))
            await stream.finish()
            raw = await stream.read_all()
        except StreamIOFailed as exc:
            raise ListFailed(f"list interrupted: {exc}") from exc

    text = raw.decode("utf-8", errors="replace")
    listing = Listing(parse_listing(text), text)
    log.debug("stream %s: listed %d entries", stream.stream_id, len(listing))
    return listing


async def upload_file(
    session,
    path: PathLike,
    remote_name: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> UploadResult:
    """Send ``path`` to the peer under ``remote_name`` (default: its basename).

    No application-level acknowledgment is awaited: the upload counts as
    successful once the transport reports every byte and the end of the
    stream as delivered to the peer.
    """
    path = Path(path)
    name = remote_name or path.name
    field = encode_filename(name)

    try:
        f = open(path, "rb")
    except OSError as exc:
        raise LocalIOFailed(f"cannot open {path}: {exc}") from exc

    with f:
        stream = await session.open_stream()
        async with stream:
            await stream.write(encode_command(Command.UPLOAD))
            await stream.write(field)

            content = 0
            while True:
                try:
                    chunk = f.read(chunk_size)
                except OSError as exc:
                    raise LocalIOFailed(f"cannot read {path}: {exc}") from exc
                if not chunk:
                    break
                await stream.write(chunk)
                content += len(chunk)

            await stream.flush()

    log.debug("stream %s: uploaded %s (%d bytes)", stream.stream_id, name, content)
    return UploadResult(name=name, content_bytes=content, bytes_written=len(field) + content)


async def download_file(
    session,
    name: str,
    dest_dir: PathLike,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> DownloadResult:
    field = encode_filename(name)
    dest = Path(dest_dir) / name

    stream = await session.open_stream()
    async with stream:
        await stream.write(encode_command(Command.DOWNLOAD))
        await stream.write(field)

        raw = await stream.read_exactly(SIZE_FRAME_LEN)
        if not raw:
            raise MalformedSizeFrame("stream ended before the size frame")
        expected, is_error = decode_size(raw)
        if is_error:
            raise RemoteFileNotFound(name)
        log.debug("stream %s: %s advertised as %d bytes", stream.stream_id, name, expected)

        try:
            out = open(dest, "wb")
        except OSError as exc:
            raise LocalIOFailed(f"cannot create {dest}: {exc}") from exc

        with out:
            await stream.write(READY_TOKEN)
            await stream.finish()

            received = 0
            while True:
                chunk = await stream.read(chunk_size)
                if not chunk:
                    break
                try:
                    out.write(chunk)
                except OSError as exc:
                    raise LocalIOFailed(f"cannot write {dest}: {exc}") from exc
                received += len(chunk)

    result = DownloadResult(name=name, path=dest, expected=expected, received=received)
    if not result.complete:
        log.warning("%s: received %d bytes, %d advertised", name, received, expected)
    return result
