#Filename: proxy_relay.py
"""
HTTP RELAY
Forwards non-CONNECT requests to their destination through an
httpx.AsyncClient, strips denied headers from the response and streams it
back to the client.
"""

import asyncio
from typing import Optional, List, Set, Tuple, FrozenSet, Union, AsyncIterator

import httpx

from structures import ProxyConfig, ProxyRequest, HeaderMapping, DENIED_RESPONSE_HEADERS
from proxy_common import (
    BaseProxyHandler, ProxyError, PayloadError, LogCallback, HOP_BY_HOP_HEADERS,
    filter_headers, render_head, send_error, dump_request, dump_response
)

def upstream_url(request: ProxyRequest) -> str:
    """Absolute-form targets are used as-is, origin-form ones are joined with Host."""
    target = request.target
    if target.lower().startswith(('http://', 'https://')):
        return target
    host = request.headers.get('Host')
    if not host:
        raise ProxyError("http: no Host in request URL")
    if not target.startswith('/'):
        target = '/' + target
    return f"http://{host}{target}"

def hop_by_hop_names(headers: HeaderMapping) -> Set[str]:
    """Lower-cased names owned by this hop: the fixed set plus any named in Connection."""
    names = set(HOP_BY_HOP_HEADERS)
    for value in headers.get_all('Connection'):
        names.update(t.strip().lower() for t in value.split(',') if t.strip())
    return names

def forwarded_headers(headers: HeaderMapping) -> List[Tuple[bytes, bytes]]:
    """
    Request headers minus the connection-management fields of this hop.
    Values were decoded as latin-1 off the wire; re-encoding them hands
    httpx the client's original bytes.
    """
    dropped = hop_by_hop_names(headers)
    return [
        (k.encode('latin-1'), v.encode('latin-1'))
        for k, v in headers.multi_items()
        if k.lower() not in dropped
    ]

def is_bodiless(method: str, status_code: int) -> bool:
    return method == 'HEAD' or status_code < 200 or status_code in (204, 304)

class HttpRelay(BaseProxyHandler):
    """
    Relays one request/response exchange. Stateless across requests: holds
    only the shared transport, the immutable config and the denied key set.
    """
    __slots__ = ('client', 'config', 'denied')

    def __init__(
        self,
        client: httpx.AsyncClient,
        config: ProxyConfig,
        manager_callback: Optional[LogCallback],
        denied: FrozenSet[str] = DENIED_RESPONSE_HEADERS
    ):
        super().__init__(manager_callback)
        self.client = client
        self.config = config
        self.denied = denied

    async def relay(self, request: ProxyRequest, writer: asyncio.StreamWriter) -> bool:
        """
        Forwards `request` and writes the filtered response to `writer`.
        Returns True when the client connection may carry another request.
        """
        self.log("DEBUG", f"HTTP connection: Client={request.client_str}, Target={request.host}")

        content: Union[bytes, AsyncIterator[bytes], None] = None
        captured: Optional[bytes] = None
        if request.has_body:
            if self.config.log_request_body:
                try:
                    captured = await request.read_body()
                except PayloadError as e:
                    self.log("ERROR", f"Malformed request body from {request.client_str}: {e}")
                    await send_error(writer, 500, str(e))
                    return False
                content = captured
            else:
                content = request.iter_body()
        self.log("DEBUG", f"HTTP Req:\n{dump_request(request, captured)}")

        try:
            upstream_request = self.client.build_request(
                request.method,
                upstream_url(request),
                headers=forwarded_headers(request.headers),
                content=content
            )
            response = await self.client.send(upstream_request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL, ProxyError) as e:
            self.log("ERROR", f"Round trip to {request.host} failed: {e}")
            await send_error(writer, 503, str(e) or type(e).__name__)
            return False

        try:
            return await self._write_response(request, response, writer)
        finally:
            await response.aclose()

    async def _write_response(
        self,
        request: ProxyRequest,
        response: httpx.Response,
        writer: asyncio.StreamWriter
    ) -> bool:
        """Writes status, filtered headers and the raw body, in that order."""
        # Raw bytes as latin-1, so render_head writes back exactly what arrived.
        raw_headers = HeaderMapping(
            (k.decode('latin-1'), v.decode('latin-1')) for k, v in response.headers.raw
        )
        status = response.status_code
        reason = response.reason_phrase

        body: Optional[bytes] = None
        if self.config.log_response_body:
            try:
                body = b"".join([chunk async for chunk in response.aiter_raw()])
            except httpx.HTTPError as e:
                self.log("ERROR", f"Reading response from {request.host} failed: {e}")
                await send_error(writer, 503, str(e) or type(e).__name__)
                return False
        self.log("DEBUG", "HTTP Raw Res:\n" + dump_response(
            response.http_version, status, reason, raw_headers, body
        ))

        final = filter_headers(raw_headers, self.denied)
        self.log("DEBUG", "HTTP Final Res:\n" + dump_response(
            response.http_version, status, reason, final, body
        ))

        out = final.copy()
        for name in hop_by_hop_names(raw_headers):
            out.discard(name)

        keep_alive = not request.wants_close
        bodiless = is_bodiless(request.method, status)
        chunked = False
        if bodiless or 'Content-Length' in out:
            pass
        elif body is not None:
            out.set('Content-Length', str(len(body)))
        elif request.version == 'HTTP/1.1':
            out.set('Transfer-Encoding', 'chunked')
            chunked = True
        else:
            # HTTP/1.0 without a length: the body ends when the connection does.
            keep_alive = False

        if not keep_alive:
            out.set('Connection', 'close')
        elif request.version == 'HTTP/1.0':
            out.set('Connection', 'keep-alive')

        try:
            writer.write(render_head(f"HTTP/1.1 {status} {reason}", out.multi_items()))
            if bodiless:
                await writer.drain()
                return keep_alive
            if body is not None:
                writer.write(body)
            else:
                async for chunk in response.aiter_raw():
                    if not chunk:
                        continue
                    if chunked:
                        writer.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
                    else:
                        writer.write(chunk)
                    await writer.drain()
                if chunked:
                    writer.write(b"0\r\n\r\n")
            await writer.drain()
        except httpx.HTTPError as e:
            # Status and headers are already on the wire; only closing is left.
            self.log("ERROR", f"Response body from {request.host} aborted: {e}")
            return False
        except ConnectionError as e:
            self.log("DEBUG", f"Client {request.client_str} went away: {e}")
            return False
        return keep_alive
