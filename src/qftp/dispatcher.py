from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config import ClientConfig
from .errors import (
    ConfigError,
    ConnectionFailed,
    ListFailed,
    LocalIOFailed,
    OperationTimedOut,
    StreamIOFailed,
    StreamOpenFailed,
    TransferError,
    TransferIncomplete,
    mismatch_text,
)
from .frames import FileEntry, validate_filename
from .operations import DownloadResult, Listing, UploadResult, download_file, list_files, upload_file
from .transport import QuicSession, TrustStore

log = logging.getLogger(__name__)

# failures after which the connection is not trusted to carry another stream
_SESSION_FATAL = (ConnectionFailed, StreamOpenFailed, StreamIOFailed, ListFailed, OperationTimedOut)


class Operation(str, enum.Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    LIST = "list"
    EXIT = "exit"


@dataclass(frozen=True, slots=True)
class Outcome:
    op: Operation
    value: Any = None
    error: Optional[TransferError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Dispatcher:
    """Runs one operation at a time over a lazily opened, reused session."""

    def __init__(
        self,
        config: ClientConfig,
        session_factory: Optional[Callable[[ClientConfig], Any]] = None,
    ):
        self.config = config
        if session_factory is None:
            store = TrustStore(config.trust.known_hosts)

            def session_factory(cfg: ClientConfig) -> QuicSession:
                return QuicSession(cfg, trust_store=store)

        self._session_factory = session_factory
        self._session = None
        self._lock = asyncio.Lock()

    @property
    def session(self):
        return self._session

    async def dispatch(self, op: Operation | str, name: Optional[str] = None) -> Outcome:
        try:
            op = Operation(op)
        except ValueError:
            raise ConfigError(f"unknown operation: {op!r}") from None

        async with self._lock:
            if op is Operation.EXIT:
                await self._drop_session()
                return Outcome(op)

            log.info("%s start%s", op.value, f" ({name})" if name else "")
            try:
                value = await asyncio.wait_for(self._run(op, name), timeout=self.config.operation_timeout)
            except asyncio.TimeoutError:
                error: TransferError = OperationTimedOut(
                    f"{op.value} did not finish within {self.config.operation_timeout}s"
                )
                return await self._failed(op, error)
            except TransferError as exc:
                return await self._failed(op, exc)

            if isinstance(value, DownloadResult) and not value.complete:
                error = TransferIncomplete(value.name, value.expected, value.received)
                log.info("%s finished with a byte-count mismatch: %s", op.value, error)
                return Outcome(op, value, error)

            log.info("%s done", op.value)
            return Outcome(op, value)

    async def _run(self, op: Operation, name: Optional[str]):
        if op in (Operation.UPLOAD, Operation.DOWNLOAD):
            if not name:
                raise ConfigError(f"{op.value} requires a file name")
            validate_filename(name)

        session = await self._ensure_session()
        if op is Operation.LIST:
            return await list_files(session)
        if op is Operation.UPLOAD:
            return await upload_file(session, self.config.upload_dir / name, chunk_size=self.config.chunk_size)
        return await download_file(session, name, self.config.download_dir, chunk_size=self.config.chunk_size)

    async def _ensure_session(self):
        if self._session is None:
            session = self._session_factory(self.config)
            await session.open()
            self._session = session
        return self._session

    async def _failed(self, op: Operation, error: TransferError) -> Outcome:
        log.info("%s failed: %s", op.value, error)
        if isinstance(error, _SESSION_FATAL):
            await self._drop_session()
        return Outcome(op, error=error)

    async def _drop_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def close(self) -> None:
        async with self._lock:
            await self._drop_session()

    async def __aenter__(self) -> "Dispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def ensure_directories(config: ClientConfig) -> None:
    for d in (config.upload_dir, config.download_dir):
        try:
            d.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise LocalIOFailed(f"cannot create directory {d}: {exc}") from exc


def local_files(config: ClientConfig) -> list[FileEntry]:
    try:
        return sorted(
            (FileEntry(p.name, p.stat().st_size) for p in config.upload_dir.iterdir() if p.is_file()),
            key=lambda e: e.name,
        )
    except OSError as exc:
        raise LocalIOFailed(f"cannot read {config.upload_dir}: {exc}") from exc


def describe(outcome: Outcome) -> str:
    op, value, error = outcome.op, outcome.value, outcome.error
    if isinstance(value, DownloadResult) and isinstance(error, TransferIncomplete):
        return (
            f"download {value.name}: byte-count mismatch, {mismatch_text(value.expected, value.received)}; "
            f"file kept at {value.path}"
        )
    if error is not None:
        return f"{op.value} failed: {type(error).__name__}: {error}"
    if isinstance(value, Listing):
        if value.empty:
            return "list: no remote files"
        return f"list: {len(value)} file(s)\n" + "\n".join(
            f"  {e.name}" if e.size is None else f"  {e.name} ({e.size} bytes)" for e in value
        )
    if isinstance(value, UploadResult):
        return f"upload {value.name}: {value.content_bytes} bytes sent ({value.bytes_written} written)"
    if isinstance(value, DownloadResult):
        return f"download {value.name}: {value.received} bytes saved to {value.path}"
    return f"{op.value}: ok"
