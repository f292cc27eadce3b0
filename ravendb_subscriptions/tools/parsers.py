from __future__ import annotations

import json
import logging
import socket
import time
from typing import Optional, Dict, Iterator, Callable

import ijson


class _SocketReader:
    """
    File-like view over a socket for ijson.

    Whitespace only chunks are counted as server heartbeats. They are still handed to the parser,
    the same bytes may be part of a string value that spans several reads.
    Every recv is bounded by the idle timeout and by the current read deadline, whichever comes first.
    """

    def __init__(self, sock: socket.socket, buffer_size: int, on_heartbeat: Callable[[], None]):
        self._socket = sock
        self._buffer_size = buffer_size
        self._on_heartbeat = on_heartbeat
        self.idle_timeout: Optional[float] = None
        self.deadline: Optional[float] = None

    def _next_timeout(self) -> Optional[float]:
        timeout = self.idle_timeout
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("Read deadline expired")
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def read(self, size: int = -1) -> bytes:
        if size == 0:
            return b""
        self._socket.settimeout(self._next_timeout())
        data = self._socket.recv(self._buffer_size if size < 0 else min(size, self._buffer_size))
        if data and data.isspace():
            self._on_heartbeat()
        return data


class TcpStream:
    """
    Duplex JSON frame stream over a connected socket: incoming frames are parsed incrementally
    with ijson, outgoing frames are written as raw JSON bytes.
    """

    logger = logging.getLogger("TcpStream")

    def __init__(self, sock: socket.socket, buffer_size: int = 32 * 1024, idle_timeout: Optional[float] = None):
        self._socket = sock
        self.heartbeats_received = 0
        self.last_heartbeat: Optional[float] = None
        self._reader = _SocketReader(sock, buffer_size, self._heartbeat)
        self._reader.idle_timeout = idle_timeout
        self._frames: Iterator[Dict] = ijson.items(self._reader, "", multiple_values=True, use_float=True)
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def socket(self) -> socket.socket:
        return self._socket

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle_timeout(self) -> Optional[float]:
        return self._reader.idle_timeout

    @idle_timeout.setter
    def idle_timeout(self, value: Optional[float]) -> None:
        self._reader.idle_timeout = value

    def _heartbeat(self) -> None:
        self.heartbeats_received += 1
        self.last_heartbeat = time.monotonic()

    def read_next_object(self, timeout: Optional[float] = None) -> Optional[Dict]:
        """
        Blocks until the next complete JSON object arrives. Returns None once the peer closed the stream.
        Raises socket.timeout when nothing but heartbeats arrived within the timeout.
        """
        self._reader.deadline = None if timeout is None else time.monotonic() + timeout
        try:
            return next(self._frames)
        except StopIteration:
            return None
        finally:
            self._reader.deadline = None

    def send_json(self, json_dict: Dict) -> None:
        self.send(json.dumps(json_dict).encode("utf-8"))

    def send(self, data: bytes) -> None:
        self._socket.settimeout(None)
        self._socket.sendall(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # peer already gone
            pass
        self._socket.close()
