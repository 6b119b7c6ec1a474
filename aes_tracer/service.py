import json
import logging
import uuid
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

from flask import Flask, Response, current_app, g, request
from werkzeug.datastructures import Headers
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.routing import Rule

from .config import Config
from .errors import ForwardingError
from .forwarding import PATH_SAFE, InboundRequest, TraceForwarder, buffer_body
from .readiness import Readiness
from .transport import RequestsTransport, Transport

logger = logging.getLogger(__name__)

EXTENSION = "aes_tracer"
REQUEST_ID_HEADER = "X-Request-Id"

# Carried by the connection, not by the request itself.
CONNECTION_MANAGED_HEADERS = {"host", "transfer-encoding"}

# Owned by the WSGI server on the way back to the caller.
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


class RelayResponse(Response):
    # upstream headers are relayed verbatim, never a default Content-Type
    default_mimetype = None


class TracerService:
    """Everything one server instance owns: config, readiness and transport."""

    def __init__(self, config: Config, readiness: Optional[Readiness] = None, transport: Optional[Transport] = None):
        self.config = config
        self.readiness = readiness or Readiness()
        self.transport = transport or RequestsTransport(timeout=config.upstream_timeout)
        self.forwarder = TraceForwarder.from_config(config, self.transport)

    def handle_sigterm(self, signum, frame):
        self.readiness.mark_not_ready()
        logger.warning("SIGTERM received. Marked unhealthy and waiting to be killed.")


def get_service(app: Optional[Flask] = None) -> TracerService:
    return (app or current_app).extensions[EXTENSION]


def inbound_from_request(req=None) -> InboundRequest:
    req = req or request
    headers = Headers([
        (name, value) for name, value in req.headers.items()
        if name.lower() not in CONNECTION_MANAGED_HEADERS
    ])
    return InboundRequest(
        method=req.method,
        path=wire_path(req),
        query_string=req.query_string.decode("latin-1"),
        headers=headers,
        host=req.host,
        secure=req.is_secure,
        stream=req.stream,
    )


def wire_path(req) -> str:
    """The request path as the client sent it, percent-escapes intact.

    Servers hand the raw request target over as RAW_URI or REQUEST_URI. When
    neither is there, or it does not match the routed path, the decoded path
    is escaped again.
    """
    target = req.environ.get("RAW_URI") or req.environ.get("REQUEST_URI")
    if target:
        path = urlsplit(target).path
        if unquote(path) == req.path:
            return path
    return quote(req.path, safe=PATH_SAFE)


def add_any_method_rule(app: Flask, rule: str, endpoint: str, view_func, **options) -> None:
    # add_url_rule pins GET when no methods are given, the bare Rule takes all
    app.url_map.add(Rule(rule, endpoint=endpoint, **options))
    app.view_functions[endpoint] = view_func


def multi_map(pairs):
    """Group (name, value) pairs into a key-sorted mapping of value lists."""
    grouped = {}
    for name, value in pairs:
        grouped.setdefault(name, []).append(value)
    return {name: grouped[name] for name in sorted(grouped)}


def create_app(config: Optional[Config] = None, readiness: Optional[Readiness] = None,
               transport: Optional[Transport] = None) -> Flask:
    config = config or Config()
    service = TracerService(config, readiness, transport)

    app = Flask(__name__)
    app.extensions[EXTENSION] = service
    # client address from X-Forwarded-For, as the ingress sees it
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        logger.debug("%s %s from %s", request.method, request.path, request.remote_addr)

    @app.errorhandler(ForwardingError)
    def forwarding_failed(exc):
        return Response(status=exc.status_code)

    @app.route(config.health_route, methods=["GET", "POST"])
    def health_check():
        if not service.readiness.is_ready():
            return Response(status=500)
        return Response("OK", status=200, mimetype="text/plain")

    def debug():
        logger.info("Debug request initiated")
        inbound = inbound_from_request()
        body = buffer_body(inbound.stream)

        document = {
            "headers": multi_map(inbound.headers.items()),
            "query_parameters": multi_map(request.args.items(multi=True)),
            "body": body.decode("utf-8", errors="replace"),
        }
        try:
            payload = json.dumps(document, indent=4)
        except (TypeError, ValueError) as exc:
            logger.error("Error encoding response: %s", exc)
            return Response(status=500)
        return Response(payload, status=200, mimetype="application/json")

    def trace(path):
        relay = service.forwarder.forward(inbound_from_request())
        headers = Headers([
            (name, value) for name, value in relay.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
        ])
        return RelayResponse(relay.body, status=relay.status, headers=headers, direct_passthrough=True)

    add_any_method_rule(app, config.debug_route, "debug", debug)
    add_any_method_rule(app, config.trace_route + "/", "trace", trace, defaults={"path": ""})
    add_any_method_rule(app, config.trace_route + "/<path:path>", "trace", trace)

    return app
