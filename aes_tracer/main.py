import logging
import signal
import sys

from .config import Config
from .errors import ConfigError
from .logs import configure_logging
from .service import create_app, get_service

logger = logging.getLogger(__name__)


def main():
    configure_logging()

    try:
        config = Config.from_env()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logging.getLogger().setLevel(config.log_level)
    app = create_app(config)
    service = get_service(app)

    # Flag unhealthy and keep serving until the orchestrator kills us.
    signal.signal(signal.SIGTERM, service.handle_sigterm)

    logger.info("%s listening on %s (tls=%s)", config.service_name, config.listen_addr, config.tls)
    app.run(
        host=config.host or "0.0.0.0",
        port=config.port,
        threaded=True,
        ssl_context=config.ssl_context,
    )
