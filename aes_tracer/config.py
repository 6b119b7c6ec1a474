import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError

ENV_PORT = "PORT"
ENV_HOST = "HOST"
ENV_TLS = "ENABLE_TLS"
ENV_TARGET_HOST = "TARGET_HOST"  # where forwarded requests are sent
ENV_TRACE_HEADER_PREFIX = "TRACE_PREFIX"  # prefix of headers to be cleared
ENV_TRACE_ROUTE = "TRACE_ROUTE"  # route under which trace requests are initiated
ENV_HEALTH_ROUTE = "HEALTH_ROUTE"
ENV_DEBUG_ROUTE = "DEBUG_ROUTE"
ENV_SERVICE_NAME = "SERVICE_NAME"
ENV_UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
ENV_LOG_LEVEL = "LOG_LEVEL"

DEFAULT_PORT = 8080
DEFAULT_TLS_PORT = 8443
DEFAULT_TRACE_ROUTE = "/trace"
DEFAULT_TRACE_HEADER_PREFIX = "X-B3"
DEFAULT_HEALTH_ROUTE = "/health"
DEFAULT_DEBUG_ROUTE = "/debug"
DEFAULT_SERVICE_NAME = "aes-tracer"

TLS_CERT_FILE = "/certs/cert.pem"
TLS_KEY_FILE = "/certs/key.pem"

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def get_env(environ: Mapping[str, str], name: str, fallback: Optional[str] = None) -> Optional[str]:
    """Return the variable, or ``fallback`` when it is unset or empty."""
    value = environ.get(name, "")
    return value if value else fallback


def parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"expected a boolean, got {value!r}")


def _route(environ, name, default):
    route = get_env(environ, name, default)
    if not route.startswith("/"):
        raise ConfigError(f"{name} must start with '/', got {route!r}")
    if len(route) > 1 and route.endswith("/"):
        raise ConfigError(f"{name} must not end with '/', got {route!r}")
    return route


@dataclass(frozen=True)
class Config:
    service_name: str = DEFAULT_SERVICE_NAME
    host: str = ""
    port: int = DEFAULT_PORT
    tls: bool = False
    target_host: Optional[str] = None
    trace_route: str = DEFAULT_TRACE_ROUTE
    header_prefix: str = DEFAULT_TRACE_HEADER_PREFIX
    health_route: str = DEFAULT_HEALTH_ROUTE
    debug_route: str = DEFAULT_DEBUG_ROUTE
    upstream_timeout: Optional[float] = None
    log_level: str = "INFO"

    @property
    def listen_addr(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def ssl_context(self):
        return (TLS_CERT_FILE, TLS_KEY_FILE) if self.tls else None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Resolve configuration from environment variables.

        Raises ConfigError for a non-boolean ENABLE_TLS, a non-numeric or
        out-of-range PORT, a malformed route or a bad UPSTREAM_TIMEOUT.
        """
        if environ is None:
            environ = os.environ

        try:
            tls = parse_bool(get_env(environ, ENV_TLS, "false"))
        except ConfigError:
            raise ConfigError(f"{ENV_TLS} environment variable must be either 'true' or 'false'") from None

        default_port = DEFAULT_TLS_PORT if tls else DEFAULT_PORT
        raw_port = get_env(environ, ENV_PORT, str(default_port))
        try:
            port = int(raw_port)
        except ValueError:
            raise ConfigError(f"{ENV_PORT} must be an integer, got {raw_port!r}") from None
        if port < 1 or port > 65535:
            raise ConfigError("Server port must be in range 1..65535 (inclusive)")

        timeout = None
        raw_timeout = get_env(environ, ENV_UPSTREAM_TIMEOUT)
        if raw_timeout is not None:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ConfigError(f"{ENV_UPSTREAM_TIMEOUT} must be a number of seconds, got {raw_timeout!r}") from None
            if timeout <= 0:
                raise ConfigError(f"{ENV_UPSTREAM_TIMEOUT} must be positive")

        log_level = get_env(environ, ENV_LOG_LEVEL, "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ConfigError(f"{ENV_LOG_LEVEL} must be a logging level name, got {log_level!r}")

        trace_route = _route(environ, ENV_TRACE_ROUTE, DEFAULT_TRACE_ROUTE)
        if trace_route == "/":
            raise ConfigError(f"{ENV_TRACE_ROUTE} must name a path prefix, not '/'")

        return cls(
            service_name=get_env(environ, ENV_SERVICE_NAME, DEFAULT_SERVICE_NAME),
            host=get_env(environ, ENV_HOST, ""),
            port=port,
            tls=tls,
            target_host=get_env(environ, ENV_TARGET_HOST),
            trace_route=trace_route,
            header_prefix=get_env(environ, ENV_TRACE_HEADER_PREFIX, DEFAULT_TRACE_HEADER_PREFIX),
            health_route=_route(environ, ENV_HEALTH_ROUTE, DEFAULT_HEALTH_ROUTE),
            debug_route=_route(environ, ENV_DEBUG_ROUTE, DEFAULT_DEBUG_ROUTE),
            upstream_timeout=timeout,
            log_level=log_level,
        )
