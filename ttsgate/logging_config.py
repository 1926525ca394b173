"""structlog configuration module."""

import logging
import sys

import structlog


def setup_logging(debug: bool = False, json_logs: bool | None = None) -> None:
    """
    Configure structlog and stdlib logging.

    Args:
        debug: Enables DEBUG level. Also selects console output unless
            ``json_logs`` says otherwise.
        json_logs: Force JSON (True) or console (False) rendering.
    """
    level = logging.DEBUG if debug else logging.INFO
    use_json = (not debug) if json_logs is None else json_logs

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id (from middleware)
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer = (
        structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # supabase/httpx/openai log through stdlib; keep them on the same stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for noisy in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
