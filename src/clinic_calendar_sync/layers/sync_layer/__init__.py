"""
同期層 - 予約 ⇔ 外部カレンダー双方向同期を管理
"""

from .conflict_resolver import ConflictResolver, ConflictStrategy, Winner
from .event_storage import EventStorage
from .sync_orchestrator import BatchResult, ItemStatus, PullResult, SyncMode, SyncOrchestrator

__all__ = [
    'ConflictResolver', 'ConflictStrategy', 'Winner',
    'EventStorage',
    'BatchResult', 'ItemStatus', 'PullResult', 'SyncMode', 'SyncOrchestrator'
]
