"""
リトライポリシー - 一時的なプロバイダー障害の指数バックオフ再試行
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ...core.exceptions import CalendarSyncError, ProviderRateLimited

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """リトライ設定（認可エラー・4xxは再試行しない）"""
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: Optional[dict]) -> 'RetryPolicy':
        config = config or {}
        return cls(
            max_attempts=int(config.get('max_attempts', cls.max_attempts)),
            backoff_base=float(config.get('backoff_base', cls.backoff_base)),
            backoff_multiplier=float(config.get('backoff_multiplier', cls.backoff_multiplier)),
            max_delay_seconds=float(config.get('max_delay_seconds', cls.max_delay_seconds)),
        )

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """attempt回目（1始まり）の失敗後の待機秒数"""
        if isinstance(error, ProviderRateLimited) and error.retry_after is not None:
            return min(float(error.retry_after), self.max_delay_seconds)
        delay = self.backoff_base * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation",
                  sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
        """operationを実行し、retryableなエラーのみ再試行する"""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except CalendarSyncError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    if e.retryable:
                        logger.warning(f"{description} failed after {attempt} attempt(s): {e}")
                    raise

                delay = self.delay_for(attempt, e)
                logger.info(
                    f"{description} failed ({e.error_type.value}), "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_attempts})"
                )
                await sleep(delay)
