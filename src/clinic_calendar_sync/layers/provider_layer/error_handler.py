"""
エラー分類システム
発生箇所で例外を分類し、UIへ渡す前に対処ヒント・リトライ可否・要対応フラグを付与する
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from ...core.exceptions import CalendarSyncError, SyncErrorType

logger = logging.getLogger(__name__)


# 利用者の操作なしには解消しないエラー
ACTION_REQUIRED_TYPES = frozenset({
    SyncErrorType.REAUTHORIZATION_REQUIRED,
    SyncErrorType.OAUTH_STATE_MISMATCH,
    SyncErrorType.OAUTH_PROVIDER_ERROR,
    SyncErrorType.TOKEN_EXCHANGE_FAILED,
    SyncErrorType.POPUP_BLOCKED,
    SyncErrorType.CALLBACK_TIMEOUT,
    SyncErrorType.CONNECTION_INACTIVE,
    SyncErrorType.INVALID_ZONE,
})

DEFAULT_HINTS = {
    SyncErrorType.REAUTHORIZATION_REQUIRED: "Reconnect the external calendar account to grant access again",
    SyncErrorType.PROVIDER_RATE_LIMITED: "The calendar provider is rate limiting requests; wait a moment and retry",
    SyncErrorType.PROVIDER_UNAVAILABLE: "The calendar provider could not be reached; check connectivity and retry later",
    SyncErrorType.PROVIDER_REJECTED: "The calendar provider rejected the request; review the appointment data",
    SyncErrorType.UNKNOWN: "An unexpected error occurred; check the sync logs for more details",
}


@dataclass
class ErrorStrategy:
    """エラータイプ別の対応方針"""
    retryable: bool
    alert_threshold: int = 1
    escalation: Optional[str] = None


@dataclass
class CategorizedError:
    """分類済みエラー（UIへ渡す形）"""
    error_type: SyncErrorType
    message: str
    hint: str
    retryable: bool
    action_required: bool
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.error_type.value,
            'message': self.message,
            'hint': self.hint,
            'retryable': self.retryable,
            'action_required': self.action_required,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
        }


class ErrorHandler:
    """エラー分類・集計・エスカレーション"""

    STRATEGIES: Dict[SyncErrorType, ErrorStrategy] = {
        SyncErrorType.PROVIDER_UNAVAILABLE: ErrorStrategy(retryable=True, alert_threshold=3),
        SyncErrorType.PROVIDER_RATE_LIMITED: ErrorStrategy(retryable=True, alert_threshold=10),
        SyncErrorType.PROVIDER_REJECTED: ErrorStrategy(retryable=False, alert_threshold=5),
        SyncErrorType.REAUTHORIZATION_REQUIRED: ErrorStrategy(
            retryable=False, alert_threshold=1, escalation='immediate'
        ),
        SyncErrorType.OAUTH_STATE_MISMATCH: ErrorStrategy(
            retryable=False, alert_threshold=1, escalation='immediate'
        ),
        SyncErrorType.INVALID_ZONE: ErrorStrategy(retryable=False, alert_threshold=1),
        SyncErrorType.MALFORMED_EVENT: ErrorStrategy(retryable=False, alert_threshold=5),
        SyncErrorType.UNKNOWN: ErrorStrategy(retryable=False, alert_threshold=3),
    }

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.error_counts: Dict[SyncErrorType, int] = {}

    def classify(self, error: BaseException) -> CategorizedError:
        """例外を分類体系に対応付ける"""
        if isinstance(error, CalendarSyncError):
            return CategorizedError(
                error_type=error.error_type,
                message=error.message,
                hint=error.hint,
                retryable=error.retryable,
                action_required=error.error_type in ACTION_REQUIRED_TYPES,
                details=dict(error.details)
            )

        error_type = self._classify_foreign(error)
        strategy = self.STRATEGIES.get(error_type, self.STRATEGIES[SyncErrorType.UNKNOWN])
        return CategorizedError(
            error_type=error_type,
            message=str(error) or error.__class__.__name__,
            hint=DEFAULT_HINTS.get(error_type, DEFAULT_HINTS[SyncErrorType.UNKNOWN]),
            retryable=strategy.retryable,
            action_required=error_type in ACTION_REQUIRED_TYPES,
            details={'exception': error.__class__.__name__}
        )

    def _classify_foreign(self, error: BaseException) -> SyncErrorType:
        """分類体系外の例外（aiohttp・タイムアウト等）"""
        if isinstance(error, aiohttp.ClientResponseError):
            if error.status == 401:
                return SyncErrorType.REAUTHORIZATION_REQUIRED
            if error.status == 429:
                return SyncErrorType.PROVIDER_RATE_LIMITED
            if error.status >= 500:
                return SyncErrorType.PROVIDER_UNAVAILABLE
            return SyncErrorType.PROVIDER_REJECTED

        if isinstance(error, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
            return SyncErrorType.PROVIDER_UNAVAILABLE

        message = str(error).lower()
        if any(keyword in message for keyword in ['rate limit', '429', 'too many requests', 'quota']):
            return SyncErrorType.PROVIDER_RATE_LIMITED
        if any(keyword in message for keyword in ['unauthorized', 'invalid_grant', 'invalid_token', 'expired token']):
            return SyncErrorType.REAUTHORIZATION_REQUIRED
        if any(keyword in message for keyword in ['connection', 'timeout', 'network', 'unreachable']):
            return SyncErrorType.PROVIDER_UNAVAILABLE

        return SyncErrorType.UNKNOWN

    def handle_error(self, error: BaseException, context: Optional[dict] = None) -> CategorizedError:
        """分類・集計・閾値判定"""
        categorized = self.classify(error)
        error_type = categorized.error_type
        strategy = self.STRATEGIES.get(error_type, self.STRATEGIES[SyncErrorType.UNKNOWN])

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1
        count = self.error_counts[error_type]

        logger.error(f"Error classified as {error_type.value}: {categorized.message}")

        if count >= strategy.alert_threshold:
            logger.warning(f"Error threshold reached for {error_type.value}: {count} occurrence(s)")

        if strategy.escalation == 'immediate':
            logger.critical(
                f"Escalating {error_type.value}: {categorized.message} (context: {context or {}})"
            )

        return categorized

    def get_statistics(self) -> Dict[str, int]:
        return {error_type.value: count for error_type, count in self.error_counts.items()}

    def reset_statistics(self):
        self.error_counts.clear()
