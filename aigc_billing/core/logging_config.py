"""
日志配置模块
主日志按大小轮转、压缩归档，错误日志单独输出
"""

import sys

from loguru import logger

from aigc_billing.config import Settings


def setup_logger(settings: Settings):
    """配置日志系统，应用启动时调用一次"""
    # 移除默认配置
    logger.remove()

    # 控制台输出（开发环境）
    if settings.environment == "development" or settings.debug:
        logger.add(
            sys.stdout,
            level=settings.log_level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
            filter=lambda record: "health check" not in record["message"].lower()
        )

    settings.ensure_dirs()

    # 主日志文件
    logger.add(
        settings.log_file,
        level=settings.log_level,
        rotation="50 MB",
        retention="7 days",
        compression="gz",
        enqueue=True,          # 异步写入，防止阻塞
        backtrace=False,
        diagnose=False,
    )

    # 错误日志文件
    error_log_file = settings.log_file.replace('.log', '.error.log')
    logger.add(
        error_log_file,
        level="ERROR",
        rotation="10 MB",
        retention="30 days",
        compression="gz",
        enqueue=True,
        filter=lambda record: record["level"].name in ["ERROR", "CRITICAL"]
    )

    # 非开发环境告警同时输出到标准错误
    if settings.environment != "development":
        logger.add(sys.stderr, level="WARNING")

    return logger
