# forward_proxy.py
"""
Forward HTTP(S) Proxy -- command line entry point.

ARCHITECTURE:
- UI: banner, config dump and an <Enter>-to-shutdown prompt (prompt_toolkit).
- PROXY: delegates to 'proxy_manager.py' (lifecycle) and 'proxy_core.py' (dispatch).
- RELAY: 'proxy_relay.py' (httpx transport) and 'proxy_tunnel.py' (CONNECT).
"""

import sys
import os
import asyncio
import argparse
import contextlib
import logging
import signal
from typing import Optional, List, Tuple, Mapping

from colorama import Fore, Style, init as colorama_init
from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.formatted_text import ANSI
from prompt_toolkit.patch_stdout import patch_stdout

from proxy_manager import ProxyManager, configure_logging
from structures import ProxyConfig, DEFAULT_ADDRESS

if sys.platform != "win32":
    import uvloop

ENV_ADDRESS = "FORWARD_PROXY_ADDRESS"
ENV_LOG_REQUEST_BODY = "FORWARD_PROXY_LOG_REQUEST_BODY"
ENV_LOG_RESPONSE_BODY = "FORWARD_PROXY_LOG_RESPONSE_BODY"

logger = logging.getLogger(__name__)

BANNER = r"""
{Fore.CYAN}   FORWARD HTTP(S) PROXY{Style.RESET_ALL}
{Fore.WHITE}-- [+] HTTP relay & CONNECT tunnels [+] --{Style.RESET_ALL}
"""

def env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")

def build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forward HTTP(S) proxy with CONNECT tunneling")
    parser.add_argument(
        "-a", "--address", default=environ.get(ENV_ADDRESS, DEFAULT_ADDRESS),
        help=f"Listen address host:port (default: {DEFAULT_ADDRESS}, env {ENV_ADDRESS})"
    )
    parser.add_argument(
        "--log-request-body", action="store_true",
        default=env_flag(environ, ENV_LOG_REQUEST_BODY),
        help=f"Include request bodies in diagnostic dumps (env {ENV_LOG_REQUEST_BODY})"
    )
    parser.add_argument(
        "--log-response-body", action="store_true",
        default=env_flag(environ, ENV_LOG_RESPONSE_BODY),
        help=f"Include response bodies in diagnostic dumps (env {ENV_LOG_RESPONSE_BODY})"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser

def load_config(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Tuple[ProxyConfig, argparse.Namespace]:
    """Builds the process-wide config from flags, falling back to the environment."""
    parser = build_parser(os.environ if environ is None else environ)
    args = parser.parse_args(argv)
    config = ProxyConfig(
        log_request_body=args.log_request_body,
        log_response_body=args.log_response_body,
        address=args.address
    )
    try:
        config.listen_endpoint()
    except ValueError as e:
        parser.error(str(e))
    return config, args

class ForwardProxyApp:
    """Main application class handling console output and the proxy lifecycle."""
    def __init__(self, config: ProxyConfig, interactive: Optional[bool] = None):
        self.config = config
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self.mgr: Optional[ProxyManager] = None

    def _handler(self, level, data):
        """Callback hooked into ProxyManager for console feedback."""
        if level == "SYSTEM":
            print_formatted_text(ANSI(f"{Fore.BLUE}[SYS] {data}{Style.RESET_ALL}"))
        elif level == "ERROR":
            print_formatted_text(ANSI(f"{Fore.RED}[ERR] {data}{Style.RESET_ALL}"))

    async def _wait_for_enter(self):
        session = PromptSession()
        try:
            await session.prompt_async("Server started, press <Enter> to shutdown\n")
        except (KeyboardInterrupt, EOFError):
            pass
        if self.mgr:
            self.mgr.stop()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.mgr.stop)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handler support.
                pass

    async def run(self) -> int:
        print_formatted_text(ANSI(BANNER.format(Fore=Fore, Style=Style)))
        print_formatted_text(ANSI(f"{Fore.YELLOW}using config:{Style.RESET_ALL}\n{self.config}"))

        self.mgr = ProxyManager(self.config, external_callback=self._handler)
        try:
            await self.mgr.start()
        except OSError as e:
            logger.critical(f"Cannot listen on {self.config.address}: {e}")
            print_formatted_text(ANSI(f"{Fore.RED}[FATAL] {e}{Style.RESET_ALL}"))
            return 1

        self._install_signal_handlers()
        prompt_task = None
        stdout_ctx = patch_stdout() if self.interactive else contextlib.nullcontext()
        with stdout_ctx:
            if self.interactive:
                prompt_task = asyncio.create_task(self._wait_for_enter())
            await self.mgr.serve()
            if prompt_task and not prompt_task.done():
                prompt_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await prompt_task

        print_formatted_text("Server stopped")
        return 0

def main(argv: Optional[List[str]] = None) -> int:
    config, args = load_config(argv)
    configure_logging(args.verbose)
    colorama_init(autoreset=True)

    app = ForwardProxyApp(config)
    runner = asyncio.run if sys.platform == "win32" else uvloop.run
    try:
        return runner(app.run())
    except KeyboardInterrupt:
        return 0

if __name__ == "__main__":
    sys.exit(main())
