#Filename: structures.py
"""
CORE DATA STRUCTURES
Single Source of Truth (SSOT) for the forward proxy.
Configuration, canonical header mappings and parsed request heads shared
by the Dispatcher, the Relay and the Tunnel Establisher.
"""

from typing import (
    AsyncIterator, Dict, FrozenSet, Iterable, Iterator, List, NamedTuple,
    Optional, Tuple, Callable
)

# -- Constants --

DEFAULT_ADDRESS: str = ":8888"

# RFC 9110 token characters. Keys containing anything else are not canonicalized.
_TOKEN_CHARS: FrozenSet[str] = frozenset(
    "!#$%&'*+-.^_`|~0123456789"
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
)

# -- Types --

class ProxyConfig(NamedTuple):
    """
    Process-wide configuration. Built once at startup, never mutated.
    """
    log_request_body: bool = False
    log_response_body: bool = False
    address: str = DEFAULT_ADDRESS

    def __str__(self) -> str:
        return (
            f"Log Req Body:\t{self.log_request_body}\n"
            f"Log Res Body:\t{self.log_response_body}\n"
            f"Address:\t{self.address}"
        )

    def listen_endpoint(self) -> Tuple[Optional[str], int]:
        """
        Splits the address into (host, port).
        An empty host (":8888") means all interfaces and is returned as None.
        """
        host, sep, port_str = self.address.rpartition(':')
        if not sep:
            raise ValueError(f"Address {self.address!r} is missing a port")
        try:
            port = int(port_str)
        except ValueError as exc:
            raise ValueError(f"Invalid port in address {self.address!r}") from exc
        if not 0 <= port <= 65535:
            raise ValueError(f"Port out of range in address {self.address!r}")
        if host.startswith('[') and host.endswith(']'):
            host = host[1:-1]
        return (host or None), port


def canonical_header_key(key: str) -> str:
    """
    Returns the canonical form of a header key: the first letter and every
    letter following a hyphen upper-cased, everything else lower-cased.
    "content-type" -> "Content-Type". Keys with non-token characters are
    returned unchanged.
    """
    if not key or any(c not in _TOKEN_CHARS for c in key):
        return key
    out = []
    upper = True
    for c in key:
        out.append(c.upper() if upper else c.lower())
        upper = c == '-'
    return "".join(out)


def denied_key_set(*names: str) -> FrozenSet[str]:
    """Builds an immutable set of canonical header keys."""
    return frozenset(canonical_header_key(n) for n in names)


# Header keys stripped from every relayed response.
# NOTE: literally "Cookie", not "Set-Cookie". Pending product-owner confirmation.
DENIED_RESPONSE_HEADERS: FrozenSet[str] = denied_key_set("Cookie")


class HeaderMapping:
    """
    Case-insensitive multi-value header mapping.
    Keys are canonicalized on insertion, so one key never appears twice and
    all of its values live in a single ordered list.
    """
    __slots__ = ('_entries',)

    def __init__(self, pairs: Optional[Iterable[Tuple[str, str]]] = None) -> None:
        self._entries: Dict[str, List[str]] = {}
        if pairs is not None:
            for key, value in pairs:
                self.add(key, value)

    @classmethod
    def from_items(cls, items: Iterable[Tuple[str, Iterable[str]]]) -> 'HeaderMapping':
        """Builds a mapping from (key, values) entries."""
        mapping = cls()
        for key, values in items:
            for value in values:
                mapping.add(key, value)
        return mapping

    def add(self, key: str, value: str) -> None:
        """Appends a value to the key's sequence."""
        self._entries.setdefault(canonical_header_key(key), []).append(value)

    def set(self, key: str, value: str) -> None:
        """Replaces every value of the key with a single value."""
        self._entries[canonical_header_key(key)] = [value]

    def discard(self, key: str) -> None:
        self._entries.pop(canonical_header_key(key), None)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Returns the first value of the key."""
        values = self._entries.get(canonical_header_key(key))
        return values[0] if values else default

    def get_all(self, key: str) -> Tuple[str, ...]:
        return tuple(self._entries.get(canonical_header_key(key), ()))

    def keys(self) -> List[str]:
        return list(self._entries)

    def items(self) -> Iterator[Tuple[str, Tuple[str, ...]]]:
        """Yields (key, values) entries."""
        for key, values in self._entries.items():
            yield key, tuple(values)

    def multi_items(self) -> Iterator[Tuple[str, str]]:
        """Yields one (key, value) pair per value, value order preserved."""
        for key, values in self._entries.items():
            for value in values:
                yield key, value

    def copy(self) -> 'HeaderMapping':
        return HeaderMapping.from_items(self.items())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and canonical_header_key(key) in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HeaderMapping):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"<HeaderMapping {dict(self.items())!r}>"


BodyReader = Callable[[], AsyncIterator[bytes]]


class ProxyRequest:
    """
    A parsed client request head plus a handle on its body.
    The body is not read until the consumer iterates it.
    """
    __slots__ = ('method', 'target', 'version', 'headers', 'client_addr', '_body_reader')

    def __init__(
        self,
        method: str,
        target: str,
        version: str,
        headers: HeaderMapping,
        client_addr: Optional[Tuple[str, int]] = None,
        body_reader: Optional[BodyReader] = None
    ) -> None:
        self.method = method
        self.target = target
        self.version = version
        self.headers = headers
        self.client_addr = client_addr
        self._body_reader = body_reader

    @property
    def host(self) -> str:
        """Destination identity: the Host header, or the authority of the target."""
        if self.method == 'CONNECT':
            return self.target
        host = self.headers.get('Host')
        if host:
            return host
        if '://' in self.target:
            return self.target.split('://', 1)[1].split('/', 1)[0]
        return ""

    @property
    def client_str(self) -> str:
        if self.client_addr:
            return f"{self.client_addr[0]}:{self.client_addr[1]}"
        return "<?>"

    @property
    def has_body(self) -> bool:
        """True while an unconsumed body is attached. Framing is decided by the parser."""
        return self._body_reader is not None

    @property
    def wants_close(self) -> bool:
        """True when the client asked to close the connection after this exchange."""
        conn = ",".join(self.headers.get_all('Connection')).lower()
        if self.version == 'HTTP/1.0':
            return 'keep-alive' not in conn
        return 'close' in conn

    async def iter_body(self) -> AsyncIterator[bytes]:
        """Streams the request body. Each body can be consumed once."""
        if self._body_reader is None:
            return
        reader, self._body_reader = self._body_reader, None
        async for chunk in reader():
            yield chunk

    async def read_body(self) -> bytes:
        """Buffers the full body. Used by diagnostic capture only."""
        return b"".join([chunk async for chunk in self.iter_body()])

    def __repr__(self) -> str:
        return f"<ProxyRequest {self.method} {self.target} {self.version}>"
