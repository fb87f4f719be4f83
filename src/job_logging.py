import json
import logging
import sys
from datetime import datetime

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(job_id)s]: %(message)s"


class JobIdFilter(logging.Filter):
    def __init__(self, default_job_id=None):
        super().__init__()
        self._default = default_job_id or "-"

    def filter(self, record):
        if not getattr(record, "job_id", None):
            record.job_id = self._default
        return True


class JsonLineHandler(logging.Handler):
    def __init__(self, path):
        super().__init__()
        self._path = path
        self._stream = open(path, "a", encoding="utf-8")
        self._exception_formatter = logging.Formatter()

    def emit(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "job_id": getattr(record, "job_id", None),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            payload["exception"] = self._exception_formatter.formatException(record.exc_info)
        try:
            self.acquire()
            try:
                self._stream.write(json.dumps(payload, ensure_ascii=False) + "\n")
                self._stream.flush()
            finally:
                self.release()
        except Exception:
            self.handleError(record)

    def close(self):
        try:
            if self._stream:
                self._stream.close()
        finally:
            self._stream = None
            super().close()


def job_logger(logger, job_id):
    """Bind ``job_id`` to every record emitted through ``logger``."""
    return logging.LoggerAdapter(logger, {"job_id": job_id})


def setup_logging(verbose=False, json_log_path=None, stream=None):
    log_level = logging.DEBUG if verbose else logging.INFO
    job_filter = JobIdFilter()
    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.addFilter(job_filter)
    handlers = [stream_handler]
    if json_log_path:
        json_handler = JsonLineHandler(json_log_path)
        json_handler.addFilter(job_filter)
        handlers.append(json_handler)
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    return handlers
