from __future__ import annotations

COMMAND_LEN = 10
SIZE_FRAME_LEN = 20
FILENAME_LEN_FORMAT = "!H"  # length prefix of the filename field
MAX_FILENAME_LEN = 255

CMD_UPLOAD = "UP"
CMD_DOWNLOAD = "DOWN"
CMD_LIST = "LIST"

SIZE_ERROR_MARKER = "ERROR"
READY_TOKEN = b"READY"

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 4242
DEFAULT_ALPN = "quic-example"

DEFAULT_UPLOAD_DIR = "./client_files"
DEFAULT_DOWNLOAD_DIR = "./client_downloads"
DEFAULT_SERVER_ROOT = "./server_files"

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_OPERATION_TIMEOUT_S = 300.0

SEND_HIGH_WATER = 1024 * 1024  # unacknowledged bytes allowed per stream
SEND_POLL_S = 0.005
