"""Logging filter that tags records with request and checkout identifiers.

Attach ``CorrelationIdFilter`` to a handler so formatters can reference
``%(request_id)s`` and ``%(correlation_id)s``. The synchronous confirmation
path and the asynchronous webhook path log the same ``correlation_id`` for
one checkout attempt, which is what audits join on.
"""

from logging import Filter, LogRecord

from .middleware import CORRELATION_ID_CTX, REQUEST_ID_CTX


class CorrelationIdFilter(Filter):
    """Populate ``request_id`` and ``correlation_id`` on every record.

    Values passed explicitly through ``extra=`` win over the context
    variables. Missing values are rendered as a hyphen.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        if not getattr(record, "correlation_id", None):
            record.correlation_id = CORRELATION_ID_CTX.get()
        return True
