"""
Unix domain socket plumbing for line-delimited JSON.

Every webshield socket lives in one directory and is named after its
endpoint: ``webshield-engine.sock`` for the engine host,
``webshield-delivery.sock`` for the delivery process.
"""

import asyncio
import logging
import os
import socket
import sys
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

from .credentials import verify_same_user

logger = logging.getLogger(__name__)

SOCKET_DIR_ENV = "WEBSHIELD_SOCKET_DIR"
MAX_SOCKET_PATH_LENGTH = 104  # sun_path on macOS/BSD

# A whole rule payload can arrive as one line
STREAM_LIMIT = 16 * 1024 * 1024


class SocketError(Exception):
    """A socket could not be created or reached."""


class _LineStream:
    """Newline-framed UTF-8 text over an asyncio reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None = None,
        writer: asyncio.StreamWriter | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer

    async def send_line(self, data: str) -> None:
        if self._writer is None:
            raise ConnectionResetError("stream is not open")
        self._writer.write(data.encode() + b"\n")
        await self._writer.drain()

    async def _read(self) -> str | None:
        if self._reader is None:
            return None
        raw = await self._reader.readline()
        return raw.decode().rstrip("\n") if raw else None

    async def close(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass


class Transport(ABC):
    """Client end of a connection: connect, then exchange lines."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def send_line(self, data: str) -> None: ...

    @abstractmethod
    async def recv_line(self) -> str:
        """Next line, or ``""`` once the peer has closed."""

    @abstractmethod
    async def close(self) -> None: ...


class ClientConnection(ABC):
    """Server end of one accepted connection."""

    @abstractmethod
    async def send_line(self, data: str) -> None: ...

    @abstractmethod
    async def recv_line(self) -> str | None:
        """Next line, or None once the peer has gone."""

    @abstractmethod
    async def close(self) -> None: ...


ClientHandler = Callable[[ClientConnection], Awaitable[None]]


class AcceptedConnection(_LineStream, ClientConnection):
    def peer_is_same_user(self) -> bool:
        sock = self._writer.get_extra_info("socket") if self._writer else None
        return sock is not None and verify_same_user(sock)

    async def recv_line(self) -> str | None:
        try:
            return await self._read()
        except (ConnectionError, ValueError) as e:
            # ValueError: line longer than STREAM_LIMIT
            logger.debug("Dropping connection after read failure: %s", e)
            return None


def get_socket_path(name: str) -> Path:
    """Resolve the socket path for an endpoint.

    ``$WEBSHIELD_SOCKET_DIR`` wins; otherwise the per-user runtime
    directory, falling back to ``/tmp``.
    """
    directory = os.getenv(SOCKET_DIR_ENV)
    if directory:
        base = Path(directory)
    else:
        runtime_dir = Path(f"/run/user/{os.getuid()}")
        base = runtime_dir if runtime_dir.is_dir() else Path("/tmp")

    path = base / f"webshield-{name}.sock"
    if len(str(path)) > MAX_SOCKET_PATH_LENGTH:
        raise SocketError(
            f"Socket path {path} is {len(str(path))} characters, the limit is "
            f"{MAX_SOCKET_PATH_LENGTH}. Point {SOCKET_DIR_ENV} at a shorter directory."
        )
    return path


class UnixSocketServer:
    """Accepts same-user connections on an endpoint socket."""

    def __init__(self, name: str, client_handler: ClientHandler) -> None:
        self.socket_path = get_socket_path(name)
        self._client_handler = client_handler
        self._server: asyncio.Server | None = None

    def get_address(self) -> str:
        return str(self.socket_path)

    async def start(self) -> None:
        # A stale socket file from a crashed process blocks bind()
        self.socket_path.unlink(missing_ok=True)

        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(str(self.socket_path))
            os.chmod(self.socket_path, 0o600)
            listener.listen()
            listener.setblocking(False)
            self._server = await asyncio.start_server(
                self._accept, sock=listener, limit=STREAM_LIMIT
            )
        except OSError as e:
            listener.close()
            raise SocketError(f"Cannot listen on {self.socket_path}: {e}") from e

        logger.debug("Listening on %s", self.socket_path)

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = AcceptedConnection(reader, writer)
        if not connection.peer_is_same_user():
            logger.warning("Rejected connection on %s: peer is another user", self.socket_path)
            await connection.close()
            return
        await self._client_handler(connection)

    async def close(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
            await server.wait_closed()
        self.socket_path.unlink(missing_ok=True)


class UnixSocketClientTransport(_LineStream, Transport):
    """Connects to an endpoint socket."""

    def __init__(self, name: str) -> None:
        super().__init__()
        self.socket_path = get_socket_path(name)

    async def connect(self) -> None:
        if sys.platform == "win32":
            raise SocketError("Unix domain sockets are not available on Windows")
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                str(self.socket_path), limit=STREAM_LIMIT
            )
        except OSError as e:
            raise SocketError(f"Cannot connect to {self.socket_path}: {e}") from e

    async def recv_line(self) -> str:
        line = await self._read()
        return line if line is not None else ""


def get_server(name: str, client_handler: ClientHandler) -> UnixSocketServer:
    return UnixSocketServer(name, client_handler)


def get_client_transport(name: str) -> Transport:
    return UnixSocketClientTransport(name)
