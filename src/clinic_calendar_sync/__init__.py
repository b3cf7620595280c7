"""
外部カレンダー同期エンジン
予約 ⇔ 外部カレンダー（OAuth保護REST API）の双方向同期
"""

from .core.exceptions import (
    CalendarSyncError, CallbackTimeout, ConnectionInactive, InvalidZone, OAuthStateMismatch,
    PopupBlocked, ProviderRateLimited, ProviderRejected, ProviderUnavailable, ReauthorizationRequired
)
from .core.time_representation import TimeRange, TimeRepresentation
from .layers.auth_layer import OAuthFlowController, OAuthFlowState, TokenVault
from .layers.notification_layer import SyncEventType, SyncNotifier, SyncObserver
from .layers.provider_layer import ErrorHandler, ProviderClient, RetryPolicy
from .layers.sync_layer import ConflictResolver, EventStorage, SyncOrchestrator
from .service import CalendarSyncService

__version__ = "1.0.0"

__all__ = [
    'CalendarSyncError', 'CallbackTimeout', 'ConnectionInactive', 'InvalidZone', 'OAuthStateMismatch',
    'PopupBlocked', 'ProviderRateLimited', 'ProviderRejected', 'ProviderUnavailable',
    'ReauthorizationRequired',
    'TimeRange', 'TimeRepresentation',
    'OAuthFlowController', 'OAuthFlowState', 'TokenVault',
    'SyncEventType', 'SyncNotifier', 'SyncObserver',
    'ErrorHandler', 'ProviderClient', 'RetryPolicy',
    'ConflictResolver', 'EventStorage', 'SyncOrchestrator',
    'CalendarSyncService',
]
