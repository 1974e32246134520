import logging
from edge.core.trace import request_id_var

LOG_FORMAT = "%(asctime)s [%(levelname)s] [request_id=%(request_id)s] %(name)s: %(message)s"


class RequestIdLogFilter(logging.Filter):
    def filter(self, record):
        record.request_id = request_id_var.get() or "-"
        return True


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT)
    request_filter = RequestIdLogFilter()
    # filters on the root logger do not see records propagated from children
    for handler in logging.getLogger().handlers:
        handler.addFilter(request_filter)
