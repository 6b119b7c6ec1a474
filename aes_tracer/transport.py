import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Callable, Dict, Iterable, Optional

import requests
import urllib3
from requests.cookies import RequestsCookieJar
from werkzeug.datastructures import Headers

from .errors import ResponseRelayError, UpstreamTransportError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024


@dataclass
class OutboundRequest:
    method: str
    url: str
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""


class UpstreamResponse:
    """Status, headers and a lazily consumed body of one upstream reply."""

    def __init__(self, status: int, headers: Headers, body: Iterable[bytes], close: Optional[Callable[[], None]] = None):
        self.status = status
        self.headers = headers
        self.body = body
        self._close = close

    def close(self) -> None:
        if self._close is not None:
            self._close()
            self._close = None


class Transport(ABC):
    """Executes exactly one outbound HTTP request."""

    @abstractmethod
    def send(self, outbound: OutboundRequest) -> UpstreamResponse:
        """Return the upstream response once its headers have arrived.

        Raises UpstreamTransportError when no response could be obtained.
        Errors while reading the body are raised as ResponseRelayError from
        the body iterator.
        """


def fold_headers(headers: Headers) -> Dict[str, str]:
    """Collapse repeated header names into one comma-joined value.

    requests keeps a single value per name, so multi-valued headers are sent
    in their combined form, in their original order.
    """
    folded = {}
    names = {}
    for name, value in headers.items():
        key = name.lower()
        if key in names:
            folded[names[key]] = f"{folded[names[key]]}, {value}"
        else:
            names[key] = name
            folded[name] = value
    return folded


def response_headers(response: requests.Response) -> Headers:
    """Upstream headers as received, one entry per value, in wire order.

    urllib3 groups repeated names together, so the parsed ``http.client``
    message is preferred when it is there.
    """
    message = getattr(getattr(response.raw, "_original_response", None), "msg", None)
    if message is not None:
        pairs = message.items()
    else:
        raw = getattr(response.raw, "headers", None)
        pairs = raw.iteritems() if hasattr(raw, "iteritems") else response.headers.items()

    headers = Headers()
    for name, value in pairs:
        headers.add(name, value)
    return headers


class DiscardCookiesPolicy(DefaultCookiePolicy):
    """Cookie policy that accepts nothing.

    The session is shared by every caller, so a Set-Cookie meant for one of
    them must never be replayed upstream for another.
    """

    def set_ok(self, cookie, request):
        return False


def _iter_raw(response: requests.Response):
    try:
        yield from response.raw.stream(CHUNK_SIZE, decode_content=False)
    except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as exc:
        raise ResponseRelayError(str(exc)) from exc


class RequestsTransport(Transport):
    """Sends outbound requests through a ``requests.Session``.

    The body is streamed and relayed undecoded, so Content-Encoding and
    Content-Length from upstream stay valid for the caller.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        if session is None:
            session = requests.Session()
            # only the forwarded headers go upstream
            session.headers.clear()
        session.cookies = RequestsCookieJar(policy=DiscardCookiesPolicy())
        self.session = session
        self.timeout = timeout

    def send(self, outbound: OutboundRequest) -> UpstreamResponse:
        try:
            response = self.session.request(
                outbound.method,
                outbound.url,
                headers=fold_headers(outbound.headers),
                data=outbound.body,
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamTransportError(f"{outbound.method} {outbound.url}: {exc}") from exc

        logger.debug("Upstream answered %s for %s", response.status_code, outbound.url)
        return UpstreamResponse(
            response.status_code,
            response_headers(response),
            _iter_raw(response),
            close=response.close,
        )

    def close(self) -> None:
        self.session.close()
