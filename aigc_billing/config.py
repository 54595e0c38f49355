"""
AIGC Billing Service - 配置管理

统一管理应用配置，支持环境变量和默认值
"""

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional
import os


DEFAULT_GATEWAY_SECRET = "change_me_gateway_secret"


class Settings(BaseSettings):
    """应用配置"""

    # 应用基础配置
    app_name: str = Field(default="AIGC Billing Service", alias="APP_NAME")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8002, alias="PORT")

    # 数据库配置
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/billing.db",
        alias="DATABASE_URL"
    )

    # Redis配置
    redis_url: str = Field(default="redis://localhost:6379", alias="REDIS_URL")
    redis_db: int = Field(default=0, alias="REDIS_DB")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")

    # CORS配置
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        alias="CORS_ORIGINS"
    )

    # 支付网关配置
    pay_gateway_url: str = Field(
        default="https://tunionpay.paperyy.com/pay/view/qrcode",
        alias="PAY_GATEWAY_URL"
    )
    pay_app_id: str = Field(default="1072", alias="PAY_APP_ID")
    pay_app_secret: str = Field(default=DEFAULT_GATEWAY_SECRET, alias="PAY_APP_SECRET")
    api_base_url: str = Field(default="http://localhost:8002", alias="API_BASE_URL")

    # 订单与对账配置
    order_expire_minutes: int = Field(default=30, alias="ORDER_EXPIRE_MINUTES")
    payment_cache_ttl: int = Field(default=1800, alias="PAYMENT_CACHE_TTL")  # 秒
    payment_cache_prefix: str = Field(default="payment:", alias="PAYMENT_CACHE_PREFIX")

    # 额度并发控制
    quota_cas_max_retries: int = Field(default=3, alias="QUOTA_CAS_MAX_RETRIES")
    quota_cas_base_delay: float = Field(default=0.02, alias="QUOTA_CAS_BASE_DELAY")  # 秒

    # 手动完成支付（仅开发/测试），未设置时只在 development 环境开启
    allow_manual_complete: Optional[bool] = Field(default=None, alias="ALLOW_MANUAL_COMPLETE")

    # 日志配置
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="logs/billing-service.log", alias="LOG_FILE")
    logs_dir: str = Field(default="./logs", alias="LOGS_DIR")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True

    @property
    def manual_complete_enabled(self) -> bool:
        if self.allow_manual_complete is not None:
            return self.allow_manual_complete
        return self.environment == "development"

    @property
    def notify_url(self) -> str:
        """支付网关异步通知地址"""
        return f"{self.api_base_url.rstrip('/')}/api/v1/payments/notify"

    def ensure_dirs(self):
        """确保日志目录存在"""
        os.makedirs(self.logs_dir, exist_ok=True)
        log_dir = os.path.dirname(self.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)


def validate_settings(settings: Settings) -> bool:
    """验证关键配置"""
    errors = []

    if settings.order_expire_minutes <= 0:
        errors.append("ORDER_EXPIRE_MINUTES 必须大于0")

    if settings.quota_cas_max_retries < 1:
        errors.append("QUOTA_CAS_MAX_RETRIES 至少为1")

    if settings.environment == "production":
        if settings.debug:
            errors.append("生产环境不应启用DEBUG模式")
        if not settings.pay_app_secret or settings.pay_app_secret == DEFAULT_GATEWAY_SECRET:
            errors.append("生产环境必须设置PAY_APP_SECRET")
        if settings.allow_manual_complete:
            errors.append("生产环境不能开启ALLOW_MANUAL_COMPLETE")

    if errors:
        raise ValueError(f"配置验证失败: {'; '.join(errors)}")

    return True


@lru_cache()
def get_settings() -> Settings:
    """获取进程级配置实例"""
    return Settings()
