"""
引擎配置
"""
import os
import random
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    """可恢复失败的指数退避策略

    ``delay(n) = min(max_delay, base_delay * 2 ** (n - 1))``，再加上最多
    ``jitter * delay`` 的随机抖动，结果不超过 ``max_delay``。
    """
    base_delay: float = 60.0     # 秒
    max_delay: float = 3600.0    # 秒
    max_attempts: int = 5
    jitter: float = 0.0          # 延迟的比例，0 <= jitter < 1

    def __post_init__(self):
        if self.base_delay <= 0:
            raise ConfigurationError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ConfigurationError("max_delay must be >= base_delay")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if not 0 <= self.jitter < 1:
            raise ConfigurationError("jitter must be in [0, 1)")

    def compute_delay(self, attempts: int, rng: Optional[random.Random] = None) -> timedelta:
        """第 ``attempts`` 次失败后的退避时长"""
        exponent = max(attempts, 1) - 1
        # 限制指数，避免尝试次数过大时溢出
        delay = min(self.max_delay, self.base_delay * (2 ** min(exponent, 62)))

        if self.jitter:
            rng = rng or random
            delay = min(self.max_delay, delay + rng.uniform(0, delay * self.jitter))

        return timedelta(seconds=delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass(frozen=True)
class DispatcherSettings:
    """调度器轮询与执行器超时配置"""
    poll_interval: float = 5.0        # 秒
    batch_size: int = 10
    executor_timeout: float = 30.0    # 秒

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.executor_timeout <= 0:
            raise ConfigurationError("executor_timeout must be positive")


@dataclass(frozen=True)
class EngineSettings:
    """引擎总配置"""
    database_url: str = "sqlite+aiosqlite:///./notification_workflow.db"
    log_level: str = "INFO"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None
    ) -> "EngineSettings":
        """
        从环境变量构建配置

        Args:
            env: 代替 ``os.environ`` 读取的映射
            dotenv_path: 先加载到 ``os.environ`` 的 ``.env`` 文件

        Returns:
            EngineSettings
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        retry = RetryPolicy(
            base_delay=_float(env, "RETRY_BASE_SECONDS", 60.0),
            max_delay=_float(env, "RETRY_CEILING_SECONDS", 3600.0),
            max_attempts=_int(env, "RETRY_MAX_ATTEMPTS", 5),
            jitter=_float(env, "RETRY_JITTER", 0.0)
        )
        dispatcher = DispatcherSettings(
            poll_interval=_float(env, "DISPATCHER_POLL_INTERVAL", 5.0),
            batch_size=_int(env, "DISPATCHER_BATCH_SIZE", 10),
            executor_timeout=_float(env, "EXECUTOR_TIMEOUT_SECONDS", 30.0)
        )
        return cls(
            database_url=env.get("DATABASE_URL", cls.database_url),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
            retry=retry,
            dispatcher=dispatcher
        )


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")
