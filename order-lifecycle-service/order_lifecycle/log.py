import logging

from . import config

FORMAT = "%(asctime)s [%(levelname)s] [order-lifecycle-service] [cid=%(correlation_id)s] %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Give records logged without ``extra={"correlation_id": ...}`` a placeholder."""

    def filter(self, record):
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True


def setup_logging():
    logging.basicConfig(level=config.LOG_LEVEL, format=FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(CorrelationIdFilter())
