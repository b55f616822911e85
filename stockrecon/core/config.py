# stockrecon/core/config.py
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReconSettings(BaseSettings):
    """
    对账引擎全局配置（环境变量前缀 RECON_，也可写在 .env）
    """

    # 运行环境
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # 扫码
    SCAN_FINALIZE_MS: int = Field(default=180, description="键盘缓冲静默多久视为一次完整扫码")
    SCAN_MIN_LENGTH: int = Field(default=6, description="条码最短长度，短于此视为误触")
    SCAN_DUPLICATE_WINDOW_MS: int = Field(default=350, description="同码重读抑制窗口")
    SCAN_INBOX_POLL_MS: int = Field(default=100)
    SCAN_INBOX_KEY: str = Field(default="stock_transfer_pos_scan_queue_v1")

    # 草稿
    DRAFT_DEBOUNCE_MS: int = Field(default=300)
    DRAFT_KEY_PREFIX: str = Field(default="stock_transfer_pos")

    # 数量 / 审计 / 提交
    QTY_MAX: int = Field(default=999_999)
    AUDIT_MAX_ENTRIES: int = Field(default=50)
    ACTIVATION_CHUNK_SIZE: int = Field(default=50)
    NOTE_MAX_LEN: int = Field(default=5000)
    RESOLVER_CACHE_CHUNKS: int = Field(default=32)

    # 远端库存平台（GraphQL admin API）
    ADMIN_API_URL: str = Field(default="")
    ADMIN_API_TOKEN: str = Field(default="")
    ADMIN_API_TIMEOUT: float = Field(default=15.0)

    # 变动日志：为空时走进程内记录
    CHANGE_LOG_URL: str = Field(default="")
    CHANGE_LOG_TOKEN: str = Field(default="")
    SHOP_DOMAIN: str = Field(default="default", description="变动日志按店铺隔离；请求头 X-Shop-Domain 优先")
    CHANGE_HISTORY_MAX_EXPORT: int = Field(default=50_000)
    SHOP_TIMEZONE: str = Field(default="UTC")

    # 数据库（kv_store / inventory_change_log）
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./stockrecon.db")
    SQL_ECHO: bool = Field(default=False)

    model_config = SettingsConfigDict(env_prefix="RECON_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> ReconSettings:
    """全局单例设置入口。"""
    return ReconSettings()
