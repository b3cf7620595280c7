"""
同期通知システム - UI協調者への観測者インターフェース
固定の語彙（CONNECTED / AUTH_ERROR / SYNC_COMPLETE / SYNC_ERROR）で全観測者に並行配信する
"""

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ...core.time_representation import TimeRepresentation

logger = logging.getLogger(__name__)


class SyncEventType(Enum):
    """通知イベント種別"""
    CONNECTED = "CONNECTED"
    AUTH_ERROR = "AUTH_ERROR"
    SYNC_COMPLETE = "SYNC_COMPLETE"
    SYNC_ERROR = "SYNC_ERROR"


@dataclass
class SyncNotification:
    """通知メッセージ"""
    type: SyncEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    connection_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=TimeRepresentation.now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'payload': self.payload,
            'connection_id': self.connection_id,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class DeliveryResult:
    """配信結果サマリー"""
    notification_id: str
    total_observers: int
    delivered: int
    failed: int

    def summary(self) -> str:
        return f"Delivery: {self.delivered}/{self.total_observers} observers"


class SyncObserver(ABC):
    """通知の受け手（サブクラスで実装）"""

    name: str = "observer"

    @abstractmethod
    async def on_sync_event(self, notification: SyncNotification):
        pass


class CallbackObserver(SyncObserver):
    """関数（同期・非同期どちらでも）を観測者として登録する"""

    def __init__(self, callback: Callable[[SyncNotification], Union[None, Awaitable[None]]],
                 name: Optional[str] = None):
        self.callback = callback
        self.name = name or getattr(callback, '__name__', 'callback')

    async def on_sync_event(self, notification: SyncNotification):
        result = self.callback(notification)
        if inspect.isawaitable(result):
            await result


class SyncNotifier:
    """観測者レジストリと配信"""

    def __init__(self, history_size: int = 50):
        self.observers: List[SyncObserver] = []
        self.history: List[SyncNotification] = []
        self.history_size = history_size

        # 統計情報
        self.total_notifications = 0
        self.total_delivered = 0
        self.total_failed = 0

    def register_observer(self, observer: Union[SyncObserver, Callable]) -> SyncObserver:
        if not isinstance(observer, SyncObserver):
            observer = CallbackObserver(observer)
        self.observers.append(observer)
        logger.info(f"Registered sync observer: {observer.name}")
        return observer

    def unregister_observer(self, observer: SyncObserver):
        if observer in self.observers:
            self.observers.remove(observer)
            logger.info(f"Unregistered sync observer: {observer.name}")

    async def notify(self, event_type: SyncEventType, payload: Optional[Dict[str, Any]] = None,
                     connection_id: Optional[str] = None) -> DeliveryResult:
        """全観測者へ並行配信。観測者の失敗は同期処理に伝えない"""
        notification = SyncNotification(type=event_type, payload=payload or {}, connection_id=connection_id)
        self.total_notifications += 1

        self.history.append(notification)
        if len(self.history) > self.history_size:
            self.history = self.history[-self.history_size:]

        observers = list(self.observers)
        outcomes = await asyncio.gather(
            *(self._deliver(observer, notification) for observer in observers)
        )

        delivered = sum(1 for ok in outcomes if ok)
        result = DeliveryResult(
            notification_id=notification.id,
            total_observers=len(observers),
            delivered=delivered,
            failed=len(observers) - delivered
        )
        self.total_delivered += result.delivered
        self.total_failed += result.failed

        logger.debug(f"{event_type.value} notification {notification.id}: {result.summary()}")
        return result

    async def _deliver(self, observer: SyncObserver, notification: SyncNotification) -> bool:
        try:
            await observer.on_sync_event(notification)
            return True
        except Exception as e:
            logger.error(f"Sync observer {observer.name} failed on {notification.type.value}: {e}")
            return False

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'observers': len(self.observers),
            'total_notifications': self.total_notifications,
            'total_delivered': self.total_delivered,
            'total_failed': self.total_failed,
        }
