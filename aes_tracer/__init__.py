from .config import Config
from .forwarding import InboundRequest, TraceForwarder
from .readiness import Readiness
from .service import create_app
from .transport import OutboundRequest, RequestsTransport, Transport, UpstreamResponse

__version__ = "0.1.0"

__all__ = [
    "Config",
    "InboundRequest",
    "OutboundRequest",
    "Readiness",
    "RequestsTransport",
    "TraceForwarder",
    "Transport",
    "UpstreamResponse",
    "create_app",
]
