import sys
from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """
    應用程式全域設定。
    自動從環境變數 (.env) 讀取並驗證型別。
    """
    # 儲存設定
    LEDGER_DB_PATH: str = "tradeledger.db"

    # 帳本行為
    CLOSE_EPSILON: Decimal = Decimal("0.000001")  # 剩餘數量 <= epsilon 視為平倉
    MAX_MUTATION_RETRIES: int = 3                 # optimistic concurrency 重試上限
    DEFAULT_CLOSED_LIMIT: int = 100

    # 報表
    TZ: str = "UTC"  # 用於 day/week/month 分桶
    REPORT_DIR: str = "reports"

    # 應用程式行為
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None  # 未設定時只輸出到 console

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True  # 區分大小寫，通常環境變數建議全大寫

# Singleton Instance
try:
    settings = Settings()
except Exception as e:
    # 這裡只做基本 print，因為 logging 模組可能依賴 settings，避免循環
    print(f"CRITICAL: Failed to load configuration. Invalid env vars? {e}", file=sys.stderr)
    settings = None
