"""Logging setup and the structlog event logger.

stdlib logging stays the module-level API (logging.getLogger(__name__));
structlog renders SystemEvents with ISO timestamps.
"""

from __future__ import annotations

import logging
import sys

import structlog

from evidence_engine.config import settings
from evidence_engine.schemas.events import SystemEvent

_configured = False


def configure_logging() -> None:
    """Configure stdlib logging and structlog once per process."""
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    _configured = True


_event_log = structlog.get_logger("evidence_engine.events")


async def log_event(event: SystemEvent) -> None:
    """Global subscriber: one structured log line per SystemEvent."""
    _event_log.info(
        event.event_type.value,
        evidence_id=event.evidence_id,
        job_id=event.job_id,
        source=event.source_module,
        data=event.data,
    )
