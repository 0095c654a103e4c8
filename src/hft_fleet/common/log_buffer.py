import logging
import threading
from collections import deque
from typing import Deque, List


class RingBufferLogHandler(logging.Handler):
    """
    In-memory ring buffer of formatted log lines for the control plane.
    Thread-safe for writes/reads.
    """

    def __init__(self, capacity: int = 5000) -> None:
        super().__init__()
        self.capacity = max(1, capacity)
        self._buffer: Deque[str] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            with self._lock:
                self._buffer.append(msg)
        except Exception:  # pragma: no cover - best-effort logging
            self.handleError(record)

    def tail(self, n: int) -> List[str]:
        with self._lock:
            if n <= 0:
                return []
            return list(self._buffer)[-n:]


_handler: RingBufferLogHandler | None = None


def get_log_buffer() -> RingBufferLogHandler:
    global _handler
    if _handler is None:
        _handler = RingBufferLogHandler(capacity=5000)
        root = logging.getLogger("hft_fleet")
        root.addHandler(_handler)
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)
    return _handler
