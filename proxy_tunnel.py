#Filename: proxy_tunnel.py
"""
CONNECT TUNNEL ESTABLISHER
Dials the destination, acknowledges the client, hijacks the client
connection and pumps opaque bytes in both directions.
"""

import asyncio
from typing import Optional

from proxy_common import (
    BaseProxyHandler, ProxyError, HijackError, Hijacker, LogCallback,
    TUNNEL_CONNECT_TIMEOUT, READ_CHUNK_SIZE, CONNECTION_ESTABLISHED,
    parse_target, send_error
)

async def close_writer(writer: asyncio.StreamWriter) -> None:
    """Closes a stream writer, ignoring errors from an already dead socket."""
    try:
        writer.close()
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass

async def transfer(
    src: asyncio.StreamReader,
    src_writer: asyncio.StreamWriter,
    dst: asyncio.StreamWriter,
    initial: bytes = b""
) -> int:
    """
    Copies bytes from `src` to `dst` until end-of-stream or an error, then
    closes both the source and the destination socket of this direction.
    Returns the number of bytes copied.
    """
    copied = 0
    try:
        if initial:
            dst.write(initial)
            await dst.drain()
            copied += len(initial)
        while True:
            data = await src.read(READ_CHUNK_SIZE)
            if not data:
                break
            dst.write(data)
            await dst.drain()
            copied += len(data)
    except (ConnectionError, OSError):
        pass
    finally:
        await close_writer(dst)
        await close_writer(src_writer)
    return copied

class TunnelEstablisher(BaseProxyHandler):
    """
    Handles CONNECT requests. Owns the client connection from the dial until
    both copy directions have ended.
    """
    __slots__ = ('connect_timeout',)

    def __init__(
        self,
        manager_callback: Optional[LogCallback],
        connect_timeout: float = TUNNEL_CONNECT_TIMEOUT
    ):
        super().__init__(manager_callback)
        self.connect_timeout = connect_timeout

    async def establish(self, target: str, conn: Hijacker) -> None:
        """Runs a tunnel to `target` ("host:port") over the client connection."""
        host, port = parse_target(target)
        try:
            dest_reader, dest_writer = await self._connect_upstream(
                host, port, timeout=self.connect_timeout
            )
        except ProxyError as e:
            self.log("ERROR", f"Tunnel to {target} failed: {e}")
            await send_error(conn.writer, 503, str(e))
            return

        if not conn.can_hijack():
            self.log("ERROR", f"Tunnel to {target}: connection cannot be hijacked")
            await send_error(conn.writer, 500, "Tunneling (hijacking) not supported")
            await close_writer(dest_writer)
            return

        try:
            conn.writer.write(CONNECTION_ESTABLISHED)
            await conn.writer.drain()
            client_reader, client_writer, pending = conn.hijack()
        except (HijackError, ConnectionError) as e:
            self.log("ERROR", f"Tunnel to {target}: hijack failed: {e}")
            await send_error(conn.writer, 503, str(e))
            await close_writer(dest_writer)
            await close_writer(conn.writer)
            return

        self.log("DEBUG", f"Tunnel established: Target={host}:{port}")
        upstream = asyncio.create_task(
            transfer(client_reader, client_writer, dest_writer, initial=pending),
            name=f"tunnel-up-{host}:{port}"
        )
        downstream = asyncio.create_task(
            transfer(dest_reader, dest_writer, client_writer),
            name=f"tunnel-down-{host}:{port}"
        )
        sent, received = await asyncio.gather(upstream, downstream, return_exceptions=True)
        for result in (sent, received):
            if isinstance(result, BaseException):
                self.log("ERROR", f"Tunnel to {target} aborted: {result!r}")
        self.log(
            "DEBUG",
            f"Tunnel closed: Target={host}:{port} "
            f"Sent={sent if isinstance(sent, int) else '?'} "
            f"Received={received if isinstance(received, int) else '?'}"
        )
