import logging
from collections import deque
from pathlib import Path

__all__ = ["LOG_FORMAT", "configure_logging", "get_log_tail", "logger"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class DequeHandler(logging.Handler):
    """直近のログを保持するハンドラ（モニタリング画面用、最大100件）."""

    def __init__(self, maxlen: int = 100) -> None:
        super().__init__()
        self.records: deque[str] = deque(maxlen=maxlen)

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


logger = logging.getLogger("myfocus")
_tail = DequeHandler()
_tail.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))

if not logger.handlers:
    logger.setLevel(logging.INFO)
    logger.addHandler(_tail)


def configure_logging(log_dir: Path, filename: str = "myfocus.log") -> Path:
    """ファイル出力を追加する。二重に呼ばれても同じファイルには一度だけ."""
    log_dir.mkdir(parents=True, exist_ok=True)
    path = (log_dir / filename).resolve()
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(
            handler.baseFilename
        ) == path:
            return path

    fh = logging.FileHandler(path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logger.addHandler(fh)
    return path


def get_log_tail(max_lines: int = 100) -> list[str]:
    return list(_tail.records)[-max_lines:]
