from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Awaitable, Callable, List, Optional

import pytest

from qftp.config import ClientConfig
from qftp.server import FileServer
from qftp.transport import SendTracker, Stream


class MemoryWriter:
    """Writer half of an in-memory stream; feeds the peer's reader."""

    def __init__(self, peer: asyncio.StreamReader, stream_id: int):
        self.peer = peer
        self.stream_id = stream_id
        self.data = bytearray()
        self.eof = False

    def write(self, data: bytes) -> None:
        if self.eof:
            raise ConnectionResetError("write after eof")
        self.data += data
        self.peer.feed_data(data)

    def write_eof(self) -> None:
        self.eof = True
        self.peer.feed_eof()

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def get_extra_info(self, name, default=None):
        return self.stream_id if name == "stream_id" else default


class FakeSender:
    def __init__(self):
        self._buffer_start = 0
        self._buffer_stop = 0
        self.is_finished = False
        self.fin_sent = False


class AckingProtocol:
    """Mimics the parts of aioquic's protocol a ``SendTracker`` looks at.

    Every ``transmit`` call acknowledges up to ``per_transmit`` queued bytes
    on each stream, then the FIN once nothing else is outstanding.
    """

    def __init__(self, per_transmit: int = 4):
        self.per_transmit = per_transmit
        self.transmits = 0
        self._quic = SimpleNamespace(_streams={})
        self._closed = asyncio.Event()

    def sender(self, stream_id: int) -> FakeSender:
        return self._quic._streams.setdefault(stream_id, SimpleNamespace(sender=FakeSender())).sender

    def transmit(self) -> None:
        self.transmits += 1
        for stream in self._quic._streams.values():
            s = stream.sender
            s._buffer_start = min(s._buffer_stop, s._buffer_start + self.per_transmit)
            s.is_finished = s.fin_sent and s._buffer_start == s._buffer_stop


class TrackedWriter(MemoryWriter):
    """Memory writer that queues its bytes on an ``AckingProtocol`` sender."""

    def __init__(self, peer: asyncio.StreamReader, stream_id: int, protocol: AckingProtocol):
        super().__init__(peer, stream_id)
        self.sender = protocol.sender(stream_id)

    def write(self, data: bytes) -> None:
        super().write(data)
        self.sender._buffer_stop += len(data)

    def write_eof(self) -> None:
        super().write_eof()
        self.sender.fin_sent = True


Handler = Optional[Callable[[Stream], Awaitable[None]]]


class LoopbackSession:
    """Session whose streams are served in-process by ``handler``.

    Without a handler the peer ends of the streams are left to the test
    (see ``peer_streams``).

    With ``sequential`` set, a new stream is only handed out once the peer
    finished every earlier stream, which keeps file-system effects ordered.

    With a ``protocol`` the client streams report their sends to it and
    carry a ``SendTracker``, so acknowledgment waits can be observed.
    """

    def __init__(self, handler: Handler, sequential: bool = True, protocol: Optional[AckingProtocol] = None):
        self.handler = handler
        self.sequential = sequential
        self.protocol = protocol
        self.is_open = False
        self.opened = 0
        self.closed = 0
        self.client_streams: List[Stream] = []
        self.peer_streams: List[Stream] = []
        self.tasks: List[asyncio.Task] = []

    async def open(self) -> None:
        self.is_open = True
        self.opened += 1

    async def open_stream(self) -> Stream:
        if self.sequential:
            await self.drain()
        client_reader = asyncio.StreamReader()
        peer_reader = asyncio.StreamReader()
        sid = 4 * len(self.client_streams)
        if self.protocol is None:
            client = Stream(client_reader, MemoryWriter(peer_reader, sid), sid)
        else:
            client = Stream(
                client_reader,
                TrackedWriter(peer_reader, sid, self.protocol),
                sid,
                tracker=SendTracker(self.protocol, poll_interval=0),
            )
        peer = Stream(peer_reader, MemoryWriter(client_reader, sid), sid)
        self.client_streams.append(client)
        self.peer_streams.append(peer)
        if self.handler is not None:
            self.tasks.append(asyncio.ensure_future(self._serve(peer)))
        return client

    async def _serve(self, peer: Stream) -> None:
        async with peer:
            await self.handler(peer)

    async def drain(self) -> None:
        if self.tasks:
            await asyncio.gather(*self.tasks)

    async def close(self) -> None:
        for t in self.tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.is_open = False
        self.closed += 1


@pytest.fixture
def server_root(tmp_path):
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def file_server(server_root):
    return FileServer(server_root, chunk_size=7)


@pytest.fixture
def client_config(tmp_path):
    return ClientConfig(
        upload_dir=tmp_path / "client_files",
        download_dir=tmp_path / "client_downloads",
        operation_timeout=5.0,
        chunk_size=5,
    )


@pytest.fixture(autouse=True)
def _current_event_loop():
    # Tests that build asyncio primitives outside ``asyncio.run`` need a
    # current loop; an earlier ``asyncio.run`` leaves none set.
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    asyncio.set_event_loop(None)
    loop.close()
