#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared logic, constants, and base classes for the forward proxy core.
Implements Single Source of Truth (SSOT) for proxy timeouts and limits,
the response Header Filter and HTTP/1.1 wire rendering helpers.
"""

import asyncio
import re
import socket
from http import HTTPStatus
from typing import Optional, Callable, Tuple, FrozenSet, Protocol, Iterable

from structures import HeaderMapping, ProxyRequest

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
TUNNEL_CONNECT_TIMEOUT = 5.0
UPSTREAM_CONNECT_TIMEOUT = 5.0
IDLE_TIMEOUT = 60.0
SHUTDOWN_GRACE_PERIOD = 10.0
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536

# Connection-management fields owned by the transport on each hop.
HOP_BY_HOP_HEADERS: FrozenSet[str] = frozenset({
    'connection', 'keep-alive', 'proxy-connection', 'transfer-encoding', 'te', 'upgrade'
})

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"

LogCallback = Callable[[str, object], None]

class ProxyError(Exception):
    """Base exception for Proxy operations."""

class PayloadError(ProxyError):
    """Raised when a message body violates its declared framing."""

class HijackError(ProxyError):
    """Raised when raw ownership of a client connection cannot be acquired."""

class Hijacker(Protocol):
    """
    A client connection whose socket can be taken away from the HTTP framing
    layer. Implemented by Http11ProxyHandler.
    """
    writer: asyncio.StreamWriter

    def can_hijack(self) -> bool: ...

    def hijack(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter, bytes]: ...

# -- Stateless Helper Functions --

def filter_headers(headers: HeaderMapping, denied: FrozenSet[str]) -> HeaderMapping:
    """
    Returns a new mapping holding every entry of `headers` whose key is not in
    `denied`. Retained value sequences are copied as-is, order preserved.
    `denied` must hold canonical keys (see structures.denied_key_set).
    """
    return HeaderMapping.from_items(
        (key, values) for key, values in headers.items() if key not in denied
    )

def reason_phrase(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return ""

def render_head(
    status_line: str,
    headers: Iterable[Tuple[str, str]]
) -> bytes:
    """Serializes a start line and header pairs into an HTTP/1.1 message head."""
    buf = [f"{status_line}\r\n".encode('latin-1')]
    for k, v in headers:
        buf.append(f"{k}: {v}\r\n".encode('latin-1'))
    buf.append(b"\r\n")
    return b"".join(buf)

def render_error(code: int, message: str) -> bytes:
    """Plain-text error response. The connection is closed after it."""
    body = (message.rstrip("\n") + "\n").encode('utf-8')
    return render_head(
        f"HTTP/1.1 {code} {reason_phrase(code)}",
        [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
            ("Connection", "close"),
        ]
    ) + body

async def send_error(writer: asyncio.StreamWriter, code: int, message: str) -> None:
    """Sends an HTTP error response to the client. Best effort."""
    try:
        writer.write(render_error(code, message))
        await writer.drain()
    except (ConnectionError, RuntimeError):
        pass

def dump_request(request: ProxyRequest, body: Optional[bytes] = None) -> str:
    """Diagnostic rendering of a request head, optionally with its body."""
    head = render_head(
        f"{request.method} {request.target} {request.version}",
        request.headers.multi_items()
    )
    return (head + (body or b"")).decode('utf-8', 'replace')

def dump_response(
    version: str,
    status_code: int,
    reason: str,
    headers: HeaderMapping,
    body: Optional[bytes] = None
) -> str:
    """Diagnostic rendering of a response head, optionally with its body."""
    head = render_head(f"{version} {status_code} {reason}", headers.multi_items())
    return (head + (body or b"")).decode('utf-8', 'replace')

def parse_target(target: str, default_port: int = 443) -> Tuple[str, int]:
    """Parses a host string into (hostname, port)."""
    if not target:
        return "", 0
    if target.startswith('['):
        end = target.find(']')
        if end != -1:
            host = target[1:end]
            rem = target[end+1:]
            if rem.startswith(':'):
                try:
                    return host, int(rem[1:])
                except ValueError:
                    pass
            else:
                return host, default_port
    if ':' in target:
        host, port_str = target.rsplit(':', 1)
        try:
            return host, int(port_str)
        except ValueError:
            pass
    return target, default_port

class BaseProxyHandler:
    """
    Base class containing shared logic for the proxy handlers.
    Holds the injected log collaborator.
    """
    __slots__ = ('callback',)

    def __init__(self, manager_callback: Optional[LogCallback]):
        self.callback = manager_callback

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback. A broken sink never breaks a request."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                pass

    async def _connect_upstream(
        self,
        host: str,
        port: int,
        timeout: float = UPSTREAM_CONNECT_TIMEOUT
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Opens a plain TCP connection to the destination within `timeout` seconds.
        Raises ProxyError on refusal, resolution failure or timeout.
        """
        if not host or not port:
            raise ProxyError(f"Invalid destination {host!r}:{port}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProxyError(f"dial tcp {host}:{port}: i/o timeout") from exc
        except OSError as e:
            raise ProxyError(f"dial tcp {host}:{port}: {e}") from e
        try:
            sock = writer.get_extra_info('socket')
            if sock:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass
        return reader, writer
