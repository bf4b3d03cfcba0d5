from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import ssl
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from aioquic.asyncio import connect
from aioquic.quic.configuration import QuicConfiguration
from cryptography.hazmat.primitives.serialization import Encoding

from .config import ClientConfig, TrustMode
from .constants import SEND_HIGH_WATER, SEND_POLL_S
from .errors import ConnectionFailed, StreamIOFailed, StreamOpenFailed

log = logging.getLogger(__name__)


class SendTracker:
    """Watches the send side of aioquic streams on one connection.

    aioquic's stream writer only queues data in the QUIC stream; ``drain``
    returns immediately. The tracker polls the stream's sender until the
    queued data (and the FIN, when asked) has been acknowledged by the peer.
    """

    def __init__(self, protocol, poll_interval: float = SEND_POLL_S):
        self.protocol = protocol
        self.poll_interval = poll_interval

    @classmethod
    def for_writer(cls, writer) -> Optional["SendTracker"]:
        protocol = getattr(getattr(writer, "transport", None), "protocol", None)
        if protocol is None or not hasattr(protocol, "_quic"):
            return None
        return cls(protocol)

    @property
    def closed(self) -> bool:
        event = getattr(self.protocol, "_closed", None)
        return event is not None and event.is_set()

    def state(self, stream_id: int) -> Tuple[int, bool]:
        """Return ``(unacknowledged bytes, fin acknowledged)``."""
        stream = self.protocol._quic._streams.get(stream_id)
        if stream is None:
            # discarded once both directions completed
            return 0, True
        sender = stream.sender
        return sender._buffer_stop - sender._buffer_start, sender.is_finished

    async def wait(self, stream_id: int, backlog: int = 0, finished: bool = False) -> None:
        while True:
            unacked, done = self.state(stream_id)
            if unacked <= backlog and (done or not finished):
                return
            if self.closed:
                raise StreamIOFailed(
                    f"stream {stream_id}: connection closed with {unacked} bytes unacknowledged"
                )
            self.protocol.transmit()
            await asyncio.sleep(self.poll_interval)


class Stream:
    """One bidirectional QUIC stream, scoped to a single operation.

    Works on any reader exposing ``read``/``readexactly`` and any writer
    exposing ``write``/``write_eof``/``drain`` (the asyncio stream pair
    aioquic hands out, or an in-memory pair in tests). With a ``tracker``
    writes are held back while too much data is unacknowledged, and
    ``flush`` waits for the peer to acknowledge everything.
    """

    def __init__(
        self,
        reader,
        writer,
        stream_id: Optional[int] = None,
        tracker: Optional[SendTracker] = None,
    ):
        self.reader = reader
        self.writer = writer
        self.stream_id = stream_id
        self.tracker = tracker
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    async def read(self, n: int = -1) -> bytes:
        try:
            return await self.reader.read(n)
        except (ConnectionError, OSError) as exc:
            raise StreamIOFailed(f"stream {self.stream_id}: read failed: {exc}") from exc

    async def read_exactly(self, n: int) -> bytes:
        """Read ``n`` bytes, or fewer if the peer finishes its side first."""
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as exc:
            return exc.partial
        except (ConnectionError, OSError) as exc:
            raise StreamIOFailed(f"stream {self.stream_id}: read failed: {exc}") from exc

    async def read_all(self) -> bytes:
        return await self.read(-1)

    async def write(self, data: bytes) -> None:
        if self._finished:
            raise StreamIOFailed(f"stream {self.stream_id}: write after finish")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            raise StreamIOFailed(f"stream {self.stream_id}: write failed: {exc}") from exc
        if self.tracker is not None:
            await self.tracker.wait(self.stream_id, backlog=SEND_HIGH_WATER)

    async def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            self.writer.write_eof()
        except (ConnectionError, OSError) as exc:
            raise StreamIOFailed(f"stream {self.stream_id}: finish failed: {exc}") from exc

    async def flush(self) -> None:
        """Finish the stream and wait until the peer acknowledged all of it."""
        await self.finish()
        if self.tracker is not None:
            await self.tracker.wait(self.stream_id, finished=True)

    async def __aenter__(self) -> "Stream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.finish()
        except StreamIOFailed:
            if exc is None:
                raise
            log.debug("stream %s: finish failed while unwinding %r", self.stream_id, exc)


class TrustStore:
    """Fingerprints accepted on first use, keyed by ``host:port``."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._pins: Dict[str, str] = {}
        if path is not None and path.exists():
            try:
                self._pins = dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as exc:
                raise ConnectionFailed(f"cannot read known hosts {path}: {exc}") from exc

    def get(self, endpoint: str) -> Optional[str]:
        return self._pins.get(endpoint)

    def remember(self, endpoint: str, fingerprint: str) -> None:
        self._pins[endpoint] = fingerprint
        if self.path is None:
            return
        try:
            self.path.write_text(json.dumps(self._pins, indent=2, sort_keys=True), encoding="utf-8")
        except OSError as exc:
            log.warning("could not persist fingerprint for %s to %s: %s", endpoint, self.path, exc)


def build_quic_configuration(config: ClientConfig) -> QuicConfiguration:
    quic = QuicConfiguration(is_client=True, alpn_protocols=[config.alpn])
    if config.trust.mode is TrustMode.VERIFY:
        quic.verify_mode = ssl.CERT_REQUIRED
        if config.trust.cafile is not None:
            quic.load_verify_locations(cafile=str(config.trust.cafile))
    else:
        # pin/tofu check the fingerprint after the handshake
        quic.verify_mode = ssl.CERT_NONE
    return quic


def peer_fingerprint(protocol) -> Optional[str]:
    tls = getattr(getattr(protocol, "_quic", None), "tls", None)
    cert = getattr(tls, "_peer_certificate", None)
    if cert is None:
        return None
    return hashlib.sha256(cert.public_bytes(Encoding.DER)).hexdigest()


def check_trust(config: ClientConfig, fingerprint: Optional[str], store: TrustStore) -> None:
    mode = config.trust.mode
    if mode is TrustMode.VERIFY:
        return
    if mode is TrustMode.INSECURE:
        log.warning("certificate of %s accepted without verification", config.endpoint)
        return
    if fingerprint is None:
        raise ConnectionFailed(f"{config.endpoint}: peer certificate unavailable for {mode.value} check")

    if mode is TrustMode.PIN:
        expected = config.trust.fingerprint
    else:
        expected = store.get(config.endpoint)
        if expected is None:
            log.warning("trusting %s on first use; sha256=%s", config.endpoint, fingerprint)
            if store.path is None:
                log.warning(
                    "no known-hosts file: the fingerprint of %s is forgotten on exit and "
                    "the next run accepts any certificate",
                    config.endpoint,
                )
            store.remember(config.endpoint, fingerprint)
            return

    if fingerprint != expected:
        raise ConnectionFailed(
            f"{config.endpoint}: certificate fingerprint {fingerprint} does not match {expected}"
        )


class QuicSession:
    """One long-lived QUIC connection to the configured endpoint."""

    def __init__(self, config: ClientConfig, trust_store: Optional[TrustStore] = None):
        self.config = config
        self.trust_store = trust_store if trust_store is not None else TrustStore(config.trust.known_hosts)
        self.alpn: Optional[str] = None
        self._stack: Optional[contextlib.AsyncExitStack] = None
        self._protocol = None
        self._tracker: Optional[SendTracker] = None
        self._streams: List[Stream] = []

    @property
    def is_open(self) -> bool:
        return self._protocol is not None

    async def open(self) -> None:
        if self.is_open:
            return
        stack = contextlib.AsyncExitStack()
        target = connect(
            self.config.host,
            self.config.port,
            configuration=build_quic_configuration(self.config),
        )
        try:
            protocol = await asyncio.wait_for(
                stack.enter_async_context(target), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            await stack.aclose()
            raise ConnectionFailed(
                f"{self.config.endpoint}: handshake timed out after {self.config.connect_timeout}s"
            ) from None
        except (ConnectionError, OSError) as exc:
            await stack.aclose()
            raise ConnectionFailed(f"{self.config.endpoint}: {exc}") from exc

        try:
            check_trust(self.config, peer_fingerprint(protocol), self.trust_store)
        except ConnectionFailed:
            await stack.aclose()
            raise

        tls = getattr(getattr(protocol, "_quic", None), "tls", None)
        self.alpn = getattr(tls, "alpn_negotiated", None)
        self._stack = stack
        self._protocol = protocol
        self._tracker = SendTracker(protocol)
        log.info("connected to %s (alpn=%s)", self.config.endpoint, self.alpn)

    async def open_stream(self) -> Stream:
        if self._protocol is None:
            raise StreamOpenFailed(f"{self.config.endpoint}: session is not open")
        try:
            reader, writer = await self._protocol.create_stream()
        except (ConnectionError, OSError, ValueError) as exc:
            raise StreamOpenFailed(f"{self.config.endpoint}: {exc}") from exc
        stream_id = writer.get_extra_info("stream_id")
        log.debug("opened stream %s", stream_id)
        stream = Stream(reader, writer, stream_id, tracker=self._tracker)
        self._streams = [s for s in self._streams if not self._tracker.state(s.stream_id)[1]]
        self._streams.append(stream)
        return stream

    async def close(self) -> None:
        if self._stack is not None:
            await self._wait_finished_streams()
        stack, self._stack, self._protocol = self._stack, None, None
        self._tracker, self._streams = None, []
        if stack is None:
            return
        await stack.aclose()
        log.info("connection to %s closed", self.config.endpoint)

    async def _wait_finished_streams(self) -> None:
        """Give finished streams a bounded chance to be acknowledged before closing."""
        pending = [s for s in self._streams if s.finished]
        try:
            await asyncio.wait_for(
                asyncio.gather(*(self._tracker.wait(s.stream_id, finished=True) for s in pending)),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("closing %s with unacknowledged stream data", self.config.endpoint)
        except StreamIOFailed as exc:
            log.debug("connection to %s already gone: %s", self.config.endpoint, exc)

    async def __aenter__(self) -> "QuicSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
