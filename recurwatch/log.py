"""
Structured Logging

DESIGN DECISION: Every detection run logs through structlog with a bound
run_id, so all lines of one run (including per-merchant AI degradations)
can be traced together.
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, optionally named after its module."""
    return structlog.get_logger(name)


def create_run_id() -> UUID:
    """
    Create a new run ID for tracing one detection run.

    Bind it to the logger at the start of the run and pass the bound
    logger to every component that takes part.
    """
    return uuid4()
