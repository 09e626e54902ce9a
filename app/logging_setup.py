import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

# trace id contextvar, set per request by the HTTP middleware
TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s"


class TraceIdFilter(logging.Filter):
    def filter(self, record):
        record.trace_id = TRACE_ID_CTX.get(None)
        return True


def setup_logging(level: str = "INFO"):
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    handler.addFilter(TraceIdFilter())
    root.setLevel(logging.getLevelName(level.upper()) if isinstance(level, str) else level)
    root.handlers = []
    root.addHandler(handler)
    # SQL echo is controlled by DEBUG on the engine; keep the pool quiet
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
