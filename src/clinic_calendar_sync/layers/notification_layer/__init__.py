"""
通知層 - UI協調者への同期イベント配信
"""

from .sync_notifier import SyncEventType, SyncNotification, SyncNotifier, SyncObserver

__all__ = ['SyncEventType', 'SyncNotification', 'SyncNotifier', 'SyncObserver']
