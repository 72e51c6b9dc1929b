#Filename: proxy_core.py
"""
ASYNC PROXY CORE
HTTP/1.1 front end of the forward proxy.
Reads request heads off each client connection and dispatches them:
CONNECT goes to the Tunnel Establisher, everything else to the HTTP Relay.
"""

import asyncio
from typing import Optional, Tuple, Dict, AsyncIterator

from structures import HeaderMapping, ProxyRequest
from proxy_common import (
    BaseProxyHandler, ProxyError, PayloadError, HijackError, LogCallback,
    STRICT_HEADER_PATTERN, IDLE_TIMEOUT, MAX_HEADER_LIST_SIZE,
    COMPACTION_THRESHOLD, READ_CHUNK_SIZE, send_error, dump_request
)
from proxy_relay import HttpRelay
from proxy_tunnel import TunnelEstablisher

class Http11ProxyHandler(BaseProxyHandler):
    """
    Handles one HTTP/1.1 client connection: request parsing, dispatch, and
    hand-over of the raw socket for CONNECT tunnels.
    """
    __slots__ = (
        'reader', 'writer', 'relay', 'tunnel', 'client_addr', 'buffer',
        '_buffer_offset', '_previous_byte_was_cr', '_body_complete',
        'hijacked', 'idle', 'idle_timeout'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        relay: HttpRelay,
        tunnel: TunnelEstablisher,
        manager_callback: Optional[LogCallback],
        initial_data: bytes = b"",
        idle_timeout: Optional[float] = IDLE_TIMEOUT
    ):
        super().__init__(manager_callback)
        raw_addr = writer.get_extra_info('peername')
        self.client_addr = (
            (str(raw_addr[0]), int(raw_addr[1]))
            if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        self.reader = reader
        self.writer = writer
        self.relay = relay
        self.tunnel = tunnel
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False
        self._body_complete = True
        self.hijacked = False
        self.idle = True
        self.idle_timeout = idle_timeout

    # -- Hijacker --

    def can_hijack(self) -> bool:
        """True while the framing layer still owns a live socket."""
        if self.hijacked or self.writer.transport is None:
            return False
        return self.writer.get_extra_info('socket') is not None

    def hijack(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter, bytes]:
        """
        Hands the raw connection over to the caller. Bytes already buffered
        past the request head are returned so nothing the client sent is lost.
        """
        if self.hijacked:
            raise HijackError("connection already hijacked")
        if self.writer.is_closing():
            raise HijackError("client connection closed before hijack")
        self.hijacked = True
        pending = bytes(self.buffer[self._buffer_offset:])
        self.buffer = bytearray()
        self._buffer_offset = 0
        return self.reader, self.writer, pending

    # -- Framing --

    def _compact(self) -> None:
        if (
            self._buffer_offset > COMPACTION_THRESHOLD
            and self._buffer_offset > (len(self.buffer) // 2)
        ):
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0

    async def _read_strict_line(self, timeout: Optional[float] = None) -> bytes:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        Accepts bare LF. Returns b"" on a clean end-of-stream.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                if len(self.buffer) - self._buffer_offset > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if (len(self.buffer) - self._buffer_offset) > MAX_HEADER_LIST_SIZE:
                    raise ProxyError("Header Line Exceeded Max Length")
                self._compact()

                try:
                    data = await asyncio.wait_for(
                        self.reader.read(READ_CHUNK_SIZE), timeout=timeout
                    )
                except asyncio.TimeoutError as exc:
                    raise ProxyError("Read Timeout (Idle)") from exc

                if not data:
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise ProxyError("Incomplete message")
                    return b""
                self.buffer.extend(data)
                continue

            line_len = lf_index - self._buffer_offset
            if line_len > MAX_HEADER_LIST_SIZE:
                raise ProxyError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                if self.buffer[lf_index - 1] == 0x0D:
                    is_crlf = True
            elif lf_index == self._buffer_offset:
                if self._previous_byte_was_cr:
                    is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            if line_end > self._buffer_offset:
                line = bytes(self.buffer[self._buffer_offset:line_end])
            else:
                line = b""

            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def _read_head(self) -> Optional[ProxyRequest]:
        """
        Reads the next request head. Returns None when the client closed the
        connection between requests. Raises ProxyError on malformed input.
        """
        self.idle = True
        line = await self._read_strict_line(self.idle_timeout)
        # Tolerate stray CRLFs between pipelined requests (RFC 9112 2.2).
        while line == b"" and len(self.buffer) > self._buffer_offset:
            line = await self._read_strict_line(self.idle_timeout)
        if not line:
            return None
        self.idle = False

        try:
            parts = line.split(b' ', 2)
            if len(parts) != 3:
                raise ValueError
            method, target, version = (p.decode('ascii') for p in parts)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ProxyError("Malformed Request Line") from exc
        if version not in ('HTTP/1.0', 'HTTP/1.1'):
            raise ProxyError(f"Unsupported Protocol Version {version}")

        headers = HeaderMapping()
        while True:
            h_line = await self._read_strict_line(self.idle_timeout)
            if not h_line:
                break
            if h_line[0] in (0x20, 0x09):
                raise ProxyError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise ProxyError("Invalid Header Syntax")
            headers.add(
                match.group(1).decode('ascii'),
                match.group(2).decode('latin-1').strip()
            )

        body_reader = self._select_body_reader(method, headers)
        return ProxyRequest(method, target, version, headers, self.client_addr, body_reader)

    def _select_body_reader(self, method: str, headers: HeaderMapping):
        """Validates body framing and returns the body source for the request."""
        self._body_complete = True
        if method == 'CONNECT':
            return None
        te = ",".join(headers.get_all('Transfer-Encoding'))
        cl_values = headers.get_all('Content-Length')
        if te:
            enc = [e.strip().lower() for e in te.split(',') if e.strip()]
            if not enc or enc[-1] != 'chunked':
                raise ProxyError("Bad Transfer-Encoding")
            # Transfer-Encoding overrides Content-Length (RFC 9112 6.3).
            headers.discard('Content-Length')
            self._body_complete = False
            return self._iter_chunked_body
        if cl_values:
            if len(set(cl_values)) != 1:
                raise ProxyError("Conflicting Content-Length")
            try:
                length = int(cl_values[0])
                if length < 0:
                    raise ValueError
            except ValueError as exc:
                raise ProxyError("Invalid Content-Length") from exc
            if length:
                self._body_complete = False
                return lambda: self._iter_fixed_body(length)
        return None

    async def _iter_exact(self, n: int) -> AsyncIterator[bytes]:
        """Yields exactly n bytes from the buffer, then the stream."""
        remaining = n
        while remaining > 0:
            available = len(self.buffer) - self._buffer_offset
            if available > 0:
                take = min(available, remaining)
                chunk = bytes(self.buffer[self._buffer_offset:self._buffer_offset + take])
                self._buffer_offset += take
                remaining -= take
                self._compact()
                yield chunk
                continue
            data = await self.reader.read(min(READ_CHUNK_SIZE, remaining))
            if not data:
                raise PayloadError(f"unexpected EOF, {remaining} body bytes missing")
            remaining -= len(data)
            yield data

    async def _iter_fixed_body(self, length: int) -> AsyncIterator[bytes]:
        async for chunk in self._iter_exact(length):
            yield chunk
        self._body_complete = True

    async def _iter_chunked_body(self) -> AsyncIterator[bytes]:
        """Decodes a chunked body, yielding chunk payloads as they arrive."""
        try:
            while True:
                line = await self._read_strict_line()
                if b';' in line:
                    line, _ = line.split(b';', 1)
                try:
                    size = int(line.strip(), 16)
                    if size < 0:
                        raise ValueError
                except ValueError as exc:
                    raise PayloadError("Invalid chunk size") from exc

                if size == 0:
                    # Trailer section, discarded.
                    while await self._read_strict_line():
                        pass
                    break

                async for chunk in self._iter_exact(size):
                    yield chunk
                if await self._read_strict_line():
                    raise PayloadError("Missing chunk terminator")
        except PayloadError:
            raise
        except ProxyError as exc:
            raise PayloadError(str(exc)) from exc
        self._body_complete = True

    # -- Dispatch --

    async def run(self) -> None:
        """Main loop: read a request, dispatch it, repeat while the connection is reusable."""
        try:
            while not self.hijacked:
                try:
                    request = await self._read_head()
                except ProxyError as e:
                    self.log("DEBUG", f"Framing Error from {self.client_addr}: {e}")
                    if "Timeout" not in str(e) and "Incomplete" not in str(e):
                        await send_error(self.writer, 400, str(e))
                    return

                if request is None:
                    break

                self.log("INFO", f"Connection: Client={request.client_str}, Target={request.host}")
                self.log("DEBUG", f"Request:\n{dump_request(request)}")

                if request.method == 'CONNECT':
                    await self.tunnel.establish(request.target, self)
                    return

                keep_alive = await self.relay.relay(request, self.writer)
                if not keep_alive or not self._body_complete:
                    break
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"HTTP/1.1 Proxy Error: {e!r}")
        finally:
            if not self.hijacked and not self.writer.is_closing():
                self.writer.close()

async def start_proxy_server(
    host: Optional[str],
    port: int,
    relay: HttpRelay,
    tunnel: TunnelEstablisher,
    manager_callback: Optional[LogCallback],
    registry: Optional[Dict['asyncio.Task[None]', Http11ProxyHandler]] = None
) -> asyncio.AbstractServer:
    """
    Binds the listener and serves each accepted connection with its own
    Http11ProxyHandler. Active handlers are recorded in `registry` keyed by
    their task, for graceful shutdown. Raises OSError when binding fails.
    """
    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        handler = Http11ProxyHandler(r, w, relay, tunnel, manager_callback)
        task = asyncio.current_task()
        if registry is not None and task is not None:
            registry[task] = handler
        try:
            await handler.run()
        finally:
            if registry is not None and task is not None:
                registry.pop(task, None)

    server = await asyncio.start_server(_handle, host, port)
    bound = ", ".join(
        f"{s.getsockname()[0]}:{s.getsockname()[1]}" for s in server.sockets
    )
    if manager_callback:
        manager_callback("SYSTEM", f"Forward Proxy (HTTP/1.1) listening on {bound}")
    return server
