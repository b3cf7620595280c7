"""
同期エンジン例外定義 - エラー分類体系
各例外はエラータイプ・リトライ可否・利用者向けヒントを保持する
"""

from enum import Enum
from typing import Any, Dict, Optional


class SyncErrorType(Enum):
    """エラータイプ分類"""
    INVALID_ZONE = "invalid_zone"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"
    OAUTH_STATE_MISMATCH = "oauth_state_mismatch"
    OAUTH_PROVIDER_ERROR = "oauth_provider_error"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROVIDER_RATE_LIMITED = "provider_rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"
    MALFORMED_EVENT = "malformed_event"
    POPUP_BLOCKED = "popup_blocked"
    CALLBACK_TIMEOUT = "callback_timeout"
    CONNECTION_INACTIVE = "connection_inactive"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class CalendarSyncError(Exception):
    """同期エンジン例外の基底クラス"""

    error_type: SyncErrorType = SyncErrorType.UNKNOWN
    retryable: bool = False
    hint: str = "Check the sync logs for more details"

    def __init__(self, message: str, *, hint: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if hint:
            self.hint = hint
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "hint": self.hint,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidZone(CalendarSyncError):
    """不正なタイムゾーン識別子（既定値へのフォールバックは行わない）"""
    error_type = SyncErrorType.INVALID_ZONE
    hint = "Set a valid IANA time zone (e.g. America/Chicago) on the clinician profile"

    def __init__(self, zone_id: Any):
        super().__init__(f"Unrecognized time zone identifier: {zone_id!r}",
                         details={"zone_id": zone_id})
        self.zone_id = zone_id


class ReauthorizationRequired(CalendarSyncError):
    """トークンが回復不能 - 対話的な再認可が必要"""
    error_type = SyncErrorType.REAUTHORIZATION_REQUIRED
    hint = "Reconnect the external calendar account to grant access again"

    def __init__(self, connection_id: str, reason: str = "token is no longer valid"):
        super().__init__(f"Connection {connection_id} requires reauthorization: {reason}",
                         details={"connection_id": connection_id, "reason": reason})
        self.connection_id = connection_id


AuthExpired = ReauthorizationRequired


class OAuthStateMismatch(CalendarSyncError):
    """OAuthコールバックのstate不一致（CSRFの可能性）"""
    error_type = SyncErrorType.OAUTH_STATE_MISMATCH
    hint = "Start the calendar connection again from the settings page"


class OAuthProviderError(CalendarSyncError):
    """プロバイダーがerrorパラメータを返却"""
    error_type = SyncErrorType.OAUTH_PROVIDER_ERROR
    hint = "Authorization was declined or failed at the provider; try connecting again"


class TokenExchangeFailed(CalendarSyncError):
    """認可コードのトークン交換失敗"""
    error_type = SyncErrorType.TOKEN_EXCHANGE_FAILED
    hint = "Check the OAuth client credentials and redirect URI, then connect again"


class ProviderRateLimited(CalendarSyncError):
    """プロバイダーのレート制限"""
    error_type = SyncErrorType.PROVIDER_RATE_LIMITED
    retryable = True
    hint = "The calendar provider is rate limiting requests; wait a moment and retry"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderUnavailable(CalendarSyncError):
    """ネットワーク障害・5xx"""
    error_type = SyncErrorType.PROVIDER_UNAVAILABLE
    retryable = True
    hint = "The calendar provider could not be reached; check connectivity and retry later"


class ProviderRejected(CalendarSyncError):
    """認証以外の4xx応答"""
    error_type = SyncErrorType.PROVIDER_REJECTED
    hint = "The calendar provider rejected the request; review the appointment data"

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status = status


class MalformedEvent(CalendarSyncError):
    """解釈できないプロバイダーのイベント（削除扱いにはしない）"""
    error_type = SyncErrorType.MALFORMED_EVENT
    hint = "The external calendar returned an event that could not be read; edit or recreate it in the calendar"

    def __init__(self, external_id: Optional[str], reason: str):
        super().__init__(f"Unreadable provider event {external_id}: {reason}",
                         details={"external_event_id": external_id, "reason": reason})
        self.external_id = external_id


class PopupBlocked(CalendarSyncError):
    """認可画面のポップアップがブロックされた"""
    error_type = SyncErrorType.POPUP_BLOCKED
    hint = "Allow pop-ups for this site and start the connection again"


class CallbackTimeout(CalendarSyncError):
    """OAuthコールバック待機のタイムアウト"""
    error_type = SyncErrorType.CALLBACK_TIMEOUT
    hint = "The authorization window was not completed in time; start the connection again"


class ConnectionInactive(CalendarSyncError):
    """無効化済み・存在しない接続"""
    error_type = SyncErrorType.CONNECTION_INACTIVE
    hint = "Connect an external calendar account before syncing"


class EventNotFound(CalendarSyncError):
    """予定が見つからない"""
    error_type = SyncErrorType.NOT_FOUND
    hint = "The appointment no longer exists; refresh the calendar"


AUTH_ERRORS = (ReauthorizationRequired,)
