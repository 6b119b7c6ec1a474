"""Trace forwarding engine.

Turns an inbound request under the trace route into one outbound request
toward the target host: the trace route is cut from the path, headers
matching the filter prefix are dropped, a fresh client trace id is injected
and Envoy is told to force tracing. The upstream reply is relayed as is.
"""
import io
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterator, Optional
from urllib.parse import quote, urlsplit

from werkzeug.datastructures import Headers
from werkzeug.exceptions import ClientDisconnected

from .config import DEFAULT_TRACE_HEADER_PREFIX, Config
from .errors import (
    ClientBodyReadError,
    ForwardingError,
    RequestConstructionError,
    ResponseRelayError,
    TraceIDGenerationError,
    UpstreamTransportError,
)
from .transport import OutboundRequest, Transport, UpstreamResponse

logger = logging.getLogger(__name__)

TRACE_ID_HEADER = "x-client-trace-id"
FORCE_TRACE_HEADER = "x-envoy-force-trace"

# RFC 7230 token
_METHOD = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
# sub-delims and the characters a path segment may carry unescaped
PATH_SAFE = "/:@!$&'()*+,;=~"


@dataclass
class InboundRequest:
    method: str
    # as sent by the client, percent-escapes intact
    path: str
    query_string: str = ""
    # every header except Host, which travels separately
    headers: Headers = field(default_factory=Headers)
    host: str = ""
    secure: bool = False
    stream: BinaryIO = field(default_factory=io.BytesIO)


@dataclass
class Relay:
    status: int
    headers: Headers
    body: "RelayBody"


def buffer_body(stream: BinaryIO) -> bytes:
    try:
        return stream.read()
    except (ClientDisconnected, OSError) as exc:
        raise ClientBodyReadError(f"reading request body: {exc}") from exc


def rewrite_path(path: str, trace_route: str) -> str:
    """Strip ``trace_route`` from the start of ``path`` once, if present."""
    if path.startswith(trace_route):
        return path[len(trace_route):]
    return path


def build_url(host: str, path: str, query_string: str = "", secure: bool = False) -> str:
    if not host:
        raise RequestConstructionError("no target host: TARGET_HOST is unset and the request has no Host header")
    if any(c.isspace() for c in host):
        raise RequestConstructionError(f"invalid target host {host!r}")

    if path and not path.startswith("/"):
        path = "/" + path
    # existing escapes are kept, anything else unsafe is escaped
    path = quote(path, safe=PATH_SAFE + "%")
    scheme = "https" if secure else "http"
    url = f"{scheme}://{host}{path}"
    if query_string:
        url = f"{url}?{query_string}"

    try:
        parts = urlsplit(url)
        parts.port
    except ValueError as exc:
        raise RequestConstructionError(f"invalid target URL {url!r}: {exc}") from exc
    if parts.netloc != host or not parts.hostname:
        raise RequestConstructionError(f"invalid target host {host!r}")
    return url


def is_filtered(name: str, prefix: str) -> bool:
    return name.lower().startswith(prefix.lower())


def filter_headers(headers: Headers, prefix: str) -> Headers:
    """Copy ``headers`` in order, leaving out names starting with ``prefix``."""
    kept = Headers()
    for name, value in headers.items():
        if not is_filtered(name, prefix):
            kept.add(name, value)
    return kept


class RelayBody:
    """Response body iterable that streams the upstream body to the caller.

    The status line is already committed when iteration starts, so a failure
    while copying can only be logged. ``close`` is called by the WSGI server
    once the response is done, whether or not the body was fully sent.
    """

    def __init__(self, upstream: UpstreamResponse, url: str):
        self.upstream = upstream
        self.url = url
        self.started = False
        self.completed = False
        self.failed = False

    def __iter__(self) -> Iterator[bytes]:
        self.started = True
        try:
            for chunk in self.upstream.body:
                yield chunk
        except (ResponseRelayError, OSError) as exc:
            self.failed = True
            logger.error("Error copying response body from %s: %s", self.url, exc)
            return
        self.completed = True

    def close(self) -> None:
        if self.started and not (self.completed or self.failed):
            logger.warning("Caller went away before the response from %s was fully relayed", self.url)
        self.upstream.close()


class TraceForwarder:
    def __init__(
        self,
        transport: Transport,
        trace_route: str,
        header_prefix: str = DEFAULT_TRACE_HEADER_PREFIX,
        target_host: Optional[str] = None,
        trace_id_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ):
        self.transport = transport
        self.trace_route = trace_route
        self.header_prefix = header_prefix
        self.target_host = target_host
        self.trace_id_factory = trace_id_factory

    @classmethod
    def from_config(cls, config: Config, transport: Transport) -> "TraceForwarder":
        return cls(
            transport,
            trace_route=config.trace_route,
            header_prefix=config.header_prefix,
            target_host=config.target_host,
        )

    def new_trace_id(self) -> str:
        try:
            return str(self.trace_id_factory())
        except (NotImplementedError, OSError) as exc:
            raise TraceIDGenerationError(f"generating trace id: {exc}") from exc

    def build_outbound(self, inbound: InboundRequest) -> OutboundRequest:
        body = buffer_body(inbound.stream)

        if not _METHOD.fullmatch(inbound.method):
            raise RequestConstructionError(f"invalid method {inbound.method!r}")
        url = build_url(
            self.target_host or inbound.host,
            rewrite_path(inbound.path, quote(self.trace_route, safe=PATH_SAFE)),
            inbound.query_string,
            inbound.secure,
        )

        headers = filter_headers(inbound.headers, self.header_prefix)
        headers.set(TRACE_ID_HEADER, self.new_trace_id())
        headers.set(FORCE_TRACE_HEADER, "true")
        return OutboundRequest(inbound.method, url, headers, body)

    def forward(self, inbound: InboundRequest) -> Relay:
        """Send ``inbound`` upstream and return what to write back.

        Raises a ForwardingError subclass before any response is started:
        500 for local failures, 502 when the upstream call fails.
        """
        logger.info("Tracing request initiated: %s %s", inbound.method, inbound.path)
        try:
            outbound = self.build_outbound(inbound)
        except ForwardingError as exc:
            logger.error("Error creating forward request: %s", exc)
            raise

        logger.info("Sending request to %s", outbound.url)
        try:
            upstream = self.transport.send(outbound)
        except UpstreamTransportError as exc:
            logger.error("Error forwarding request: %s", exc)
            raise

        return Relay(upstream.status, upstream.headers, RelayBody(upstream, outbound.url))
