# proxy_manager.py

"""
Proxy Manager.
Owns the listener, the shared httpx transport and the graceful shutdown
sequence, and adapts the core's log callback onto the logging module.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Callable

import httpx

import proxy_core
from structures import ProxyConfig
from proxy_common import UPSTREAM_CONNECT_TIMEOUT, SHUTDOWN_GRACE_PERIOD
from proxy_relay import HttpRelay
from proxy_tunnel import TunnelEstablisher

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

log = logging.getLogger("ProxyManager")

def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT, datefmt=LOG_DATEFMT
    )
    # httpx logs every request at INFO; the relay already does.
    logging.getLogger("httpx").setLevel(logging.WARNING)

def create_transport_client() -> httpx.AsyncClient:
    """
    The shared upstream transport. Pooling is httpx's business; redirects are
    relayed to the client instead of followed, and no outer proxy is used.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=UPSTREAM_CONNECT_TIMEOUT),
        follow_redirects=False,
        trust_env=False
    )

class ProxyManager:
    def __init__(
        self,
        config: ProxyConfig,
        external_callback: Optional[Callable[[str, Any], None]] = None,
        client: Optional[httpx.AsyncClient] = None,
        grace_period: float = SHUTDOWN_GRACE_PERIOD
    ):
        self.config = config
        self.external_callback = external_callback
        self.client = client
        self.grace_period = grace_period
        self.server: Optional[asyncio.AbstractServer] = None
        self.connections: Dict['asyncio.Task[None]', proxy_core.Http11ProxyHandler] = {}
        self.stop_event = asyncio.Event()

    def unified_callback(self, level: str, payload: Any) -> None:
        """Routes core events to the logger, then to the external callback."""
        if level == "SYSTEM":
            log.info(f"[SYSTEM] {payload}")
        elif level == "ERROR":
            log.error(f"[ERROR] {payload}")
        elif level == "DEBUG":
            log.debug(payload)
        else:
            log.info(payload)

        if self.external_callback:
            try:
                self.external_callback(level, payload)
            except Exception: # pylint: disable=broad-exception-caught
                log.debug("External callback failed", exc_info=True)

    @property
    def listening(self) -> bool:
        return self.server is not None and self.server.is_serving()

    async def start(self) -> asyncio.AbstractServer:
        """Binds the listener. OSError propagates when the address is unavailable."""
        log.info("=== Starting Proxy Manager ===")
        host, port = self.config.listen_endpoint()
        if self.client is None:
            self.client = create_transport_client()
        relay = HttpRelay(self.client, self.config, self.unified_callback)
        tunnel = TunnelEstablisher(self.unified_callback)
        try:
            self.server = await proxy_core.start_proxy_server(
                host, port, relay, tunnel, self.unified_callback, registry=self.connections
            )
        except OSError:
            await self.client.aclose()
            raise
        return self.server

    async def serve(self) -> None:
        """Serves until stop() is called, then shuts down gracefully."""
        try:
            await self.stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown()

    async def run(self) -> None:
        await self.start()
        await self.serve()

    async def shutdown(self) -> None:
        """
        Stops accepting, drops idle keep-alive connections, lets in-flight
        exchanges and tunnels finish within the grace period, cancels the rest.
        """
        if self.server is not None:
            self.server.close()

        idle = [t for t, h in self.connections.items() if h.idle]
        for task in idle:
            task.cancel()

        active = [t for t in self.connections if not t.done()]
        if active:
            self.unified_callback(
                "SYSTEM", f"Waiting for {len(active)} in-flight connection(s)..."
            )
            _, pending = await asyncio.wait(active, timeout=self.grace_period)
            for task in pending:
                task.cancel()
            if pending:
                self.unified_callback(
                    "SYSTEM", f"Forcibly closed {len(pending)} connection(s)"
                )
                await asyncio.gather(*pending, return_exceptions=True)

        if self.server is not None:
            try:
                await asyncio.wait_for(self.server.wait_closed(), timeout=self.grace_period)
            except asyncio.TimeoutError:
                log.warning("Listener did not close within the grace period")
            self.server = None
        if self.client is not None:
            await self.client.aclose()
        self.unified_callback("SYSTEM", "Proxy stopped")

    def stop(self) -> None:
        self.stop_event.set()
