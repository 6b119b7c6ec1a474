class ConfigError(ValueError):
    """Invalid startup configuration. Fatal to process start."""


class ForwardingError(Exception):
    """Base class for per-request failures of the trace forwarder."""

    status_code = 500


class ClientBodyReadError(ForwardingError):
    status_code = 500


class RequestConstructionError(ForwardingError):
    status_code = 500


class TraceIDGenerationError(ForwardingError):
    status_code = 500


class UpstreamTransportError(ForwardingError):
    status_code = 502


class ResponseRelayError(Exception):
    """Upstream body could not be copied to the caller.

    Raised after the status line is committed, so it is logged and never
    turned into a response.
    """
