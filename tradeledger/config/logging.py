import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

# settings 載入失敗時 (例如 CLOSE_EPSILON 格式錯誤) 仍要能記錄錯誤
try:
    from tradeledger.config.settings import settings
    LOG_LEVEL = settings.LOG_LEVEL.upper() if settings else "INFO"
    LOG_FILE = settings.LOG_FILE if settings else None
except Exception:
    LOG_LEVEL = "INFO"
    LOG_FILE = None

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(name: str = "tradeledger", log_file: Optional[str] = LOG_FILE) -> logging.Logger:
    """
    帳本日誌配置。
    Console 一律輸出到 stderr，stdout 保留給 CLI 報表；
    設定 LOG_FILE 時另外寫入輪替檔案 (5MB x 3)。
    """
    logger = logging.getLogger(name)

    # 防止重複添加 Handler
    if logger.handlers:
        return logger

    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def set_level(level: str) -> None:
    """CLI -v / --log-level 覆寫。"""
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))


# 預設 Logger
logger = setup_logging()
