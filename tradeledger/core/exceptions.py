class AppError(Exception):
    """所有應用程式自定義錯誤的基類"""
    pass

class ConfigurationError(AppError):
    """設定錯誤 (如環境變數格式不正確)"""
    pass

class DataSourceError(AppError):
    """資料來源錯誤 (如原始成交紀錄無法轉換為 Trade)"""
    pass

class ValidationError(AppError):
    """交易資料格式錯誤，在任何狀態變更之前即被拒絕"""
    pass

class DataIntegrityError(ValidationError):
    """價格或數量不為正數"""
    pass

class OutOfOrderTradeError(ValidationError):
    """成交時間早於該倉位簿最後一筆已套用的成交，需要 recompute"""
    pass

class DuplicateTradeError(ValidationError):
    """同一筆成交已經被分配過"""
    pass

class TradeIdConflictError(ValidationError):
    """trade_id 已被另一筆不同來源 (source, external_id) 的成交使用"""
    pass

class LedgerError(AppError):
    """倉位帳本狀態錯誤的基類"""
    pass

class ConcurrentMutationError(LedgerError):
    """讀取後倉位已被其他寫入者修改 (optimistic version check 失敗)"""
    pass

class ConsistencyViolation(LedgerError):
    """帳本狀態偏離不變式 (如同一個 key 有兩筆 OPEN)，必須 recompute"""

    def __init__(self, message: str, key: tuple = None):
        super().__init__(message)
        self.key = key

class RecomputeError(LedgerError):
    """重建失敗，已整體 rollback"""
    pass

class PositionNotFoundError(LedgerError):
    """找不到指定的倉位"""
    pass
