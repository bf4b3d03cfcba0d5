from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Set, Tuple, Union

from aioquic.asyncio import serve as quic_serve
from aioquic.asyncio.server import QuicServer
from aioquic.quic.configuration import QuicConfiguration

from .constants import COMMAND_LEN, DEFAULT_ALPN, DEFAULT_CHUNK_SIZE, READY_TOKEN
from .errors import MalformedFrame, StreamIOFailed
from .frames import Command, decode_command, encode_size, encode_size_error, format_entry, read_filename
from .transport import SendTracker, Stream

log = logging.getLogger(__name__)


class FileServer:
    """Responder side of the protocol, serving files from ``root``."""

    def __init__(self, root: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.root = Path(root)
        self.chunk_size = chunk_size
        self._tasks: Set[asyncio.Task] = set()

    def stream_handler(self, reader, writer) -> None:
        # aioquic calls this synchronously for every stream the peer opens
        stream = Stream(reader, writer, writer.get_extra_info("stream_id"), tracker=SendTracker.for_writer(writer))
        task = asyncio.ensure_future(self.handle(stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def join(self) -> None:
        """Wait for the handlers of every stream accepted so far."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle(self, stream: Stream) -> None:
        async with stream:
            try:
                raw = await stream.read_exactly(COMMAND_LEN)
                if not raw:
                    return
                command = decode_command(raw)
                log.debug("stream %s: %s", stream.stream_id, command.value)
                if command is Command.LIST:
                    await self._list(stream)
                elif command is Command.UPLOAD:
                    await self._receive(stream)
                else:
                    await self._send(stream)
            except MalformedFrame as exc:
                log.warning("stream %s: rejected request: %s", stream.stream_id, exc)
            except StreamIOFailed as exc:
                log.warning("stream %s: %s", stream.stream_id, exc)
            except OSError as exc:
                log.error("stream %s: local storage error: %s", stream.stream_id, exc)

    async def _list(self, stream: Stream) -> None:
        lines = []
        with os.scandir(self.root) as it:
            for entry in it:
                if entry.is_file():
                    lines.append(format_entry(entry.name, entry.stat().st_size) + "\n")
        await stream.write("".join(lines).encode("utf-8"))

    async def _receive(self, stream: Stream) -> None:
        name = await read_filename(stream)
        path = self.root / name
        total = 0
        with open(path, "wb") as out:
            while True:
                chunk = await stream.read(self.chunk_size)
                if not chunk:
                    break
                out.write(chunk)
                total += len(chunk)
        log.info("received %s (%d bytes)", name, total)

    async def _send(self, stream: Stream) -> None:
        name = await read_filename(stream)
        path = self.root / name
        if not path.is_file():
            log.info("download of missing file %s", name)
            await stream.write(encode_size_error())
            return

        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            await stream.write(encode_size(size))
            token = await stream.read_exactly(len(READY_TOKEN))
            if token != READY_TOKEN:
                raise MalformedFrame(f"expected {READY_TOKEN!r}, got {token!r}")
            sent = 0
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                await stream.write(chunk)
                sent += len(chunk)
        log.info("sent %s (%d bytes)", name, sent)


async def start_server(
    host: str,
    port: int,
    certfile: Union[str, Path],
    keyfile: Union[str, Path],
    root: Union[str, Path],
    alpn: str = DEFAULT_ALPN,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[QuicServer, FileServer]:
    """Bind the QUIC endpoint and return it with its file handler."""
    configuration = QuicConfiguration(is_client=False, alpn_protocols=[alpn])
    configuration.load_cert_chain(str(certfile), str(keyfile))

    server = FileServer(root, chunk_size=chunk_size)
    server.root.mkdir(parents=True, exist_ok=True)
    quic_server = await quic_serve(host, port, configuration=configuration, stream_handler=server.stream_handler)
    log.info("serving %s on %s:%d (alpn=%s)", server.root, host, port, alpn)
    return quic_server, server


async def serve(
    host: str,
    port: int,
    certfile: Union[str, Path],
    keyfile: Union[str, Path],
    root: Union[str, Path],
    alpn: str = DEFAULT_ALPN,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    quic_server, _ = await start_server(host, port, certfile, keyfile, root, alpn=alpn, chunk_size=chunk_size)
    try:
        await asyncio.Future()
    finally:
        quic_server.close()
