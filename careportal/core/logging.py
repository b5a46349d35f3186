import logging
import sys
import structlog
from pythonjsonlogger import jsonlogger


def setup_logging(json_output: bool = False, level: int = logging.INFO):
    """Structured logging setup.

    structlog renders to the console in development and to JSON when
    ``json_output`` is set. Plain stdlib loggers share one JSON handler.
    """

    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Root logger gets a single stdout handler, even if called twice
    root = logging.getLogger()
    if not any(getattr(h, "_careportal", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._careportal = True
        root.addHandler(handler)
    root.setLevel(level)

    return structlog.get_logger()
