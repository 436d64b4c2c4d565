import logging
import threading

logger = logging.getLogger(__name__)


class LoggingProgress:
    """
    用日志输出导入进度。

    并发任务按完成顺序调用，计数器加锁以便在线程池中同样安全。
    """

    def __init__(self, total: int, label: str = "") -> None:
        self._total = total
        self._label = label
        self._done = 0
        self._lock = threading.Lock()

    @property
    def done(self) -> int:
        with self._lock:
            return self._done

    def println(self, message: str) -> None:
        with self._lock:
            done = self._done
        logger.info("[%3d/%d] %s%s", done, self._total, self._prefix(), message)

    def advance(self) -> None:
        with self._lock:
            self._done += 1

    def _prefix(self) -> str:
        return f"{self._label} " if self._label else ""
