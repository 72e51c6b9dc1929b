# tests/test_proxy_tunnel.py
"""
Tests for proxy_tunnel.py (CONNECT establishment and the byte pumps).
"""
import asyncio
import socket
import pytest
from unittest.mock import MagicMock, AsyncMock, patch

from conftest import make_writer, written, parse_response
from proxy_common import ProxyError, HijackError, CONNECTION_ESTABLISHED
from proxy_tunnel import TunnelEstablisher, transfer

def make_conn(hijackable=True, hijack_result=None, hijack_error=None):
    conn = MagicMock()
    conn.writer = make_writer()
    conn.can_hijack.return_value = hijackable
    if hijack_error:
        conn.hijack.side_effect = hijack_error
    else:
        conn.hijack.return_value = hijack_result
    return conn

def free_port() -> int:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

def feed_reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader

class TestTransfer:
    @pytest.mark.asyncio
    async def test_copies_until_eof_then_closes_both_ends(self):
        src = feed_reader(b"abc" * 1000)
        src_writer = make_writer()
        dst = make_writer()

        copied = await transfer(src, src_writer, dst, initial=b"head:")

        assert copied == 5 + 3000
        assert written(dst) == b"head:" + b"abc" * 1000
        dst.close.assert_called_once()
        src_writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_error_ends_direction(self):
        src = feed_reader(b"data")
        src_writer = make_writer()
        dst = make_writer()
        dst.drain.side_effect = ConnectionResetError()

        assert await transfer(src, src_writer, dst) == 0
        dst.close.assert_called_once()
        src_writer.close.assert_called_once()

class TestTunnelEstablisher:
    @pytest.mark.asyncio
    async def test_dial_failure_is_503(self):
        conn = make_conn()
        tunnel = TunnelEstablisher(MagicMock())
        with patch.object(TunnelEstablisher, "_connect_upstream",
                          AsyncMock(side_effect=ProxyError("dial tcp: refused"))):
            await tunnel.establish("down.example:443", conn)

        status, _, _, body = parse_response(written(conn.writer))
        assert status == 503
        assert b"refused" in body
        conn.hijack.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_destination_real_socket(self):
        conn = make_conn()
        await TunnelEstablisher(None).establish(f"127.0.0.1:{free_port()}", conn)

        assert parse_response(written(conn.writer))[0] == 503
        assert CONNECTION_ESTABLISHED not in written(conn.writer)
        conn.hijack.assert_not_called()

    @pytest.mark.asyncio
    async def test_dial_uses_fixed_timeout(self):
        tunnel = TunnelEstablisher(None)
        with patch.object(TunnelEstablisher, "_connect_upstream",
                          AsyncMock(side_effect=ProxyError("timeout"))) as dial:
            await tunnel.establish("slow.example:8443", make_conn())
        dial.assert_awaited_once_with("slow.example", 8443, timeout=5.0)

    @pytest.mark.asyncio
    async def test_stalled_dial_times_out_with_503(self):
        async def stalled(*args, **kwargs):
            await asyncio.Event().wait()

        conn = make_conn()
        tunnel = TunnelEstablisher(MagicMock(), connect_timeout=0.05)
        with patch.object(asyncio, "open_connection", stalled):
            await asyncio.wait_for(tunnel.establish("blackhole.example:443", conn), 5)

        status, _, _, body = parse_response(written(conn.writer))
        assert status == 503
        assert b"i/o timeout" in body
        assert CONNECTION_ESTABLISHED not in written(conn.writer)
        conn.hijack.assert_not_called()

    @pytest.mark.asyncio
    async def test_hijack_unsupported_is_500(self):
        conn = make_conn(hijackable=False)
        dest_writer = make_writer()
        with patch.object(TunnelEstablisher, "_connect_upstream",
                          AsyncMock(return_value=(MagicMock(), dest_writer))):
            await TunnelEstablisher(None).establish("a.com:443", conn)

        status, _, _, body = parse_response(written(conn.writer))
        assert status == 500
        assert b"hijacking" in body
        dest_writer.close.assert_called_once()
        conn.hijack.assert_not_called()

    @pytest.mark.asyncio
    async def test_hijack_failure_after_status_is_503(self):
        conn = make_conn(hijack_error=HijackError("client connection closed before hijack"))
        dest_writer = make_writer()
        with patch.object(TunnelEstablisher, "_connect_upstream",
                          AsyncMock(return_value=(MagicMock(), dest_writer))):
            await TunnelEstablisher(None).establish("a.com:443", conn)

        raw = written(conn.writer)
        assert raw.startswith(CONNECTION_ESTABLISHED)
        assert b"503 Service Unavailable" in raw[len(CONNECTION_ESTABLISHED):]
        dest_writer.close.assert_called_once()
        conn.writer.close.assert_called()

    @pytest.mark.asyncio
    async def test_success_pumps_both_directions(self):
        client_reader = feed_reader(b"client-hello")
        client_writer = make_writer()
        dest_reader = feed_reader(b"server-hello")
        dest_writer = make_writer()
        conn = make_conn(hijack_result=(client_reader, client_writer, b"early:"))

        with patch.object(TunnelEstablisher, "_connect_upstream",
                          AsyncMock(return_value=(dest_reader, dest_writer))):
            await TunnelEstablisher(None).establish("a.com:443", conn)

        conn.writer.write.assert_any_call(CONNECTION_ESTABLISHED)
        assert written(dest_writer) == b"early:client-hello"
        assert written(client_writer) == b"server-hello"

class TestTunnelOverLoopback:
    """Real sockets: proxy client <-> TunnelEstablisher <-> destination server."""

    @pytest.mark.asyncio
    async def test_tls_bytes_arrive_unchanged_both_ways(self):
        client_hello = bytes([0x16, 0x03, 0x01, 0x00, 0xa5]) + bytes(range(256)) * 4
        server_hello = bytes([0x16, 0x03, 0x03]) + bytes(reversed(range(256))) * 8
        received = asyncio.get_running_loop().create_future()

        async def destination(reader, writer):
            data = await reader.readexactly(len(client_hello))
            received.set_result(data)
            writer.write(server_hello)
            await writer.drain()
            # Destination stays open until the client side closes.
            await reader.read()
            writer.close()

        dest = await asyncio.start_server(destination, "127.0.0.1", 0)
        dest_port = dest.sockets[0].getsockname()[1]

        async def proxy(reader, writer):
            from proxy_core import Http11ProxyHandler
            handler = Http11ProxyHandler(reader, writer, MagicMock(), TunnelEstablisher(None), None)
            await handler.run()

        front = await asyncio.start_server(proxy, "127.0.0.1", 0)
        front_port = front.sockets[0].getsockname()[1]

        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", front_port)
            writer.write(f"CONNECT 127.0.0.1:{dest_port} HTTP/1.1\r\n"
                         f"Host: 127.0.0.1:{dest_port}\r\n\r\n".encode())
            await writer.drain()
            status = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
            assert status == CONNECTION_ESTABLISHED

            writer.write(client_hello)
            await writer.drain()
            assert await asyncio.wait_for(received, 5) == client_hello
            assert await asyncio.wait_for(reader.readexactly(len(server_hello)), 5) == server_hello

            # Closing the client ends client->dest; dest then closes, ending dest->client.
            writer.close()
            await writer.wait_closed()
        finally:
            front.close()
            dest.close()
            await asyncio.wait_for(front.wait_closed(), 5)
            await asyncio.wait_for(dest.wait_closed(), 5)

    @pytest.mark.asyncio
    async def test_destination_eof_does_not_wait_for_client(self):
        """Destination closes first: the client sees the bytes then EOF."""
        async def destination(reader, writer):
            writer.write(b"bye")
            await writer.drain()
            writer.close()

        dest = await asyncio.start_server(destination, "127.0.0.1", 0)
        dest_port = dest.sockets[0].getsockname()[1]

        conn_reader, conn_writer = None, None

        async def proxy(reader, writer):
            from proxy_core import Http11ProxyHandler
            await Http11ProxyHandler(reader, writer, MagicMock(), TunnelEstablisher(None), None).run()

        front = await asyncio.start_server(proxy, "127.0.0.1", 0)
        front_port = front.sockets[0].getsockname()[1]
        try:
            conn_reader, conn_writer = await asyncio.open_connection("127.0.0.1", front_port)
            conn_writer.write(f"CONNECT 127.0.0.1:{dest_port} HTTP/1.1\r\n\r\n".encode())
            await conn_writer.drain()
            await asyncio.wait_for(conn_reader.readuntil(b"\r\n\r\n"), 5)
            rest = await asyncio.wait_for(conn_reader.read(), 5)
            assert rest == b"bye"
            assert conn_reader.at_eof()
        finally:
            if conn_writer:
                conn_writer.close()
            front.close()
            dest.close()
            await asyncio.wait_for(front.wait_closed(), 5)
            await asyncio.wait_for(dest.wait_closed(), 5)
