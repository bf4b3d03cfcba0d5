from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .constants import (
    DEFAULT_ALPN,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_DOWNLOAD_DIR,
    DEFAULT_HOST,
    DEFAULT_OPERATION_TIMEOUT_S,
    DEFAULT_PORT,
    DEFAULT_UPLOAD_DIR,
)
from .errors import ConfigError


class TrustMode(str, enum.Enum):
    VERIFY = "verify"
    PIN = "pin"
    TOFU = "tofu"
    INSECURE = "insecure"


@dataclass(frozen=True, slots=True)
class TrustPolicy:
    """How the client decides whether to accept the server certificate.

    ``fingerprint`` is the hex SHA-256 of the DER certificate and is only
    used by ``pin``. ``known_hosts`` is an optional JSON file in which
    ``tofu`` remembers fingerprints across runs.
    """

    mode: TrustMode = TrustMode.TOFU
    fingerprint: Optional[str] = None
    cafile: Optional[Path] = None
    known_hosts: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.mode is TrustMode.PIN and not self.fingerprint:
            raise ConfigError("trust mode 'pin' requires a fingerprint")
        if self.fingerprint is not None:
            normalized = normalize_fingerprint(self.fingerprint)
            object.__setattr__(self, "fingerprint", normalized)


@dataclass(frozen=True, slots=True)
class ClientConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    alpn: str = DEFAULT_ALPN
    upload_dir: Path = Path(DEFAULT_UPLOAD_DIR)
    download_dir: Path = Path(DEFAULT_DOWNLOAD_DIR)
    trust: TrustPolicy = field(default_factory=TrustPolicy)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT_S
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk size must be positive: {self.chunk_size}")
        if self.connect_timeout <= 0 or self.operation_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


def normalize_fingerprint(value: str) -> str:
    digest = value.replace(":", "").strip().lower()
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ConfigError(f"not a SHA-256 fingerprint: {value!r}")
    return digest
