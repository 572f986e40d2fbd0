"""
Logging configuration with optional Grafana Loki shipping.

Console logging is always on: plain text in development, JSON elsewhere.
Security events logged by the gate carry their structured payload on the
record (``record.security_event``) so the JSON formatter and Loki labels can
surface them without parsing the message.
"""

import atexit
import json
import logging
import queue
import sys
import threading
import time

import httpx

from civicgate.config.config import Config

logger = logging.getLogger(__name__)


class LokiLogHandler(logging.Handler):
    """
    Log handler that pushes records to Grafana Loki from a background thread.

    ``emit`` only enqueues; a daemon worker drains the queue. When the queue
    is full new records are dropped rather than blocking request handling.
    """

    def __init__(self, loki_url: str, tags: dict[str, str], max_queue_size: int = 10000):
        super().__init__()
        self.loki_url = loki_url
        self.tags = tags
        self._session: httpx.Client | None = None
        self._session_lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._shutdown = threading.Event()
        self._closed = threading.Event()
        self._worker_thread = threading.Thread(target=self._worker, daemon=True)
        self._worker_thread.start()

        atexit.register(self.close)

    def _get_session(self) -> httpx.Client | None:
        if self._closed.is_set():
            return None

        with self._session_lock:
            if self._closed.is_set():
                return None
            if self._session is None:
                self._session = httpx.Client(
                    timeout=httpx.Timeout(5.0, connect=2.0),
                    limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
                )
            return self._session

    def _worker(self) -> None:
        while True:
            try:
                payload = self._queue.get(timeout=0.5)
            except queue.Empty:
                if self._shutdown.is_set():
                    break
                continue

            self._send_to_loki(payload)
            self._queue.task_done()

    def _send_to_loki(self, payload: dict) -> None:
        session = self._get_session()
        if session is None:
            return
        try:
            response = session.post(self.loki_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError:
            # Loki is best-effort; losing log lines must not affect request handling
            pass

    def emit(self, record: logging.LogRecord) -> None:
        try:
            labels = {**self.tags, "level": record.levelname, "logger": record.name}

            event = getattr(record, "security_event", None)
            if event:
                labels["security_event"] = event.get("event_type", "unknown")
                labels["severity"] = event.get("severity", "unknown")

            if record.exc_info and record.exc_info[0]:
                labels["error_type"] = record.exc_info[0].__name__

            timestamp_ns = str(int(record.created * 1_000_000_000))
            payload = {"streams": [{"stream": labels, "values": [[timestamp_ns, self.format(record)]]}]}

            try:
                self._queue.put_nowait(payload)
            except queue.Full:
                pass
        except Exception:
            self.handleError(record)

    def flush(self, timeout: float = 5.0) -> None:
        """Block until queued records are sent or the timeout elapses."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._queue.all_tasks_done.wait(timeout=remaining):
                    break

    def close(self) -> None:
        self._shutdown.set()
        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=5.0)

        if not self._worker_thread.is_alive():
            self._closed.set()
            with self._session_lock:
                if self._session is not None:
                    self._session.close()
                    self._session = None

        super().close()


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        event = getattr(record, "security_event", None)
        if event:
            log_data["security_event"] = event

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> bool:
    """
    Configure application logging.

    Sets up:
    - Console handler (plain format in development, JSON otherwise)
    - Loki handler when LOKI_ENABLED is set

    Returns:
        bool: True if Loki integration was enabled, False otherwise
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.INFO)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    if Config.IS_DEVELOPMENT:
        console_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        console_formatter = StructuredFormatter()

    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    logger.info("Console logging configured")

    loki_enabled = False
    if Config.LOKI_ENABLED:
        try:
            loki_handler = LokiLogHandler(
                loki_url=Config.LOKI_PUSH_URL,
                tags={
                    "app": Config.SERVICE_NAME,
                    "environment": Config.APP_ENV,
                },
            )
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(StructuredFormatter())
            root_logger.addHandler(loki_handler)

            logger.info(f"Loki logging enabled: {Config.LOKI_PUSH_URL}")
            loki_enabled = True
        except Exception as e:
            logger.warning(f"Failed to configure Loki logging: {e}")
    else:
        logger.info("Loki logging disabled (LOKI_ENABLED=false)")

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)

    return loki_enabled
