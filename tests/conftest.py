# conftest.py
import sys
import os
import pytest
from unittest.mock import MagicMock, AsyncMock

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from structures import HeaderMapping

def make_writer(peername=("127.0.0.1", 50000), hijackable=True):
    """StreamWriter double: sync write/close, async drain/wait_closed."""
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    extra = {"peername": peername, "socket": object() if hijackable else None}
    writer.get_extra_info.side_effect = lambda key, default=None: extra.get(key, default)
    return writer

def written(writer) -> bytes:
    """Everything written to a writer double, in order."""
    return b"".join(call.args[0] for call in writer.write.call_args_list)

def parse_response(raw: bytes):
    """Splits a raw HTTP/1.1 response into (status, reason, HeaderMapping, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    _, status, reason = lines[0].split(" ", 2)
    headers = HeaderMapping()
    for line in lines[1:]:
        k, _, v = line.partition(":")
        headers.add(k, v.strip())
    return int(status), reason, headers, body

def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))

@pytest.fixture
def mock_writer():
    return make_writer()

@pytest.fixture
def log_cb():
    return MagicMock()
