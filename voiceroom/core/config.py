"""
voiceroom.core.config
~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Voice Room Presence", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    # ── 心跳 / 在线状态 ───────────────────────────────────────────────
    HEARTBEAT_INTERVAL: float = Field(default=25.0, gt=0, description="客户端心跳间隔（秒）")
    HEARTBEAT_TIMEOUT: float = Field(default=60.0, gt=0, description="心跳超时阈值（秒）")
    RECONCILE_INTERVAL: float | None = Field(
        default=None,
        gt=0,
        description="在线状态巡检间隔（秒），为空时取 HEARTBEAT_TIMEOUT / 2",
    )
    SINGLE_SESSION: bool = Field(
        default=False,
        description="是否限制同一用户只能保持一个连接",
    )

    # ── 房间 / 麦位 ───────────────────────────────────────────────────
    ROOM_SEAT_COUNT: int = Field(default=8, ge=1, le=16, description="每个房间的麦位数")
    ROOM_MAX_MEMBERS: int = Field(default=100, ge=1, description="每个房间的最大成员数")
    ROOM_IDLE_GRACE_SECONDS: float = Field(
        default=120.0,
        ge=0,
        description="空房间保留时长（秒），超时后回收",
    )
    SELF_SERVICE_SEATS: bool = Field(
        default=True,
        description="是否允许成员自助上麦",
    )

    # ── WebSocket ────────────────────────────────────────────────────
    OUTBOX_SIZE: int = Field(default=256, ge=1, description="单连接待发送事件队列上限")
    WS_QUEUE_SIZE: int = Field(default=20, ge=1, description="单连接待处理入站事件队列上限")
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.1,
        ge=0,
        description="单连接两条入站事件的最小间隔（秒）",
    )

    # ── 钱包 ──────────────────────────────────────────────────────────
    WALLET_BASE_URL: str | None = Field(
        default=None,
        description="外部钱包服务地址，为空时使用内存钱包",
    )
    WALLET_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0, description="钱包调用超时（秒）")
    WALLET_INITIAL_COINS: int = Field(default=0, ge=0, description="内存钱包的初始金币")

    # ── MongoDB ───────────────────────────────────────────────────────
    PERSISTENCE_ENABLED: bool = Field(
        default=False,
        description="是否将礼物与聊天事件异步写入 MongoDB",
    )
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="voiceroom", description="MongoDB 数据库名")

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def reconcile_interval(self) -> float:
        """巡检间隔，未显式配置时为心跳超时的一半。"""
        return self.RECONCILE_INTERVAL or self.HEARTBEAT_TIMEOUT / 2


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
