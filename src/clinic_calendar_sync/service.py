"""
同期サービス - 設定から各層のコンポーネントを組み立てる
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiohttp

from .config.enhanced_config import EnhancedConfig, SecurityManager, get_config, get_config_manager
from .layers.auth_layer.oauth_flow import OAuthFlowController, Presenter
from .layers.auth_layer.token_vault import TokenVault
from .layers.notification_layer.sync_notifier import SyncNotifier
from .layers.provider_layer.provider_client import ProviderClient
from .layers.sync_layer.event_storage import EventStorage
from .layers.sync_layer.sync_orchestrator import SyncOrchestrator
from .utils.enhanced_logger import EnhancedLogger, get_logger

logger = logging.getLogger(__name__)


class CalendarSyncService:
    """ストア・トークン管理・APIクライアント・同期エンジン・認可フローの組み立て

    aiohttp.ClientSession の寿命を持つので ``async with`` で使う::

        async with CalendarSyncService.from_config_dir("config") as service:
            await service.orchestrator.bidirectional_sync(connection_id, time_range=window)
    """

    def __init__(self, config: Optional[EnhancedConfig] = None,
                 security_manager: Optional[SecurityManager] = None,
                 notifier: Optional[SyncNotifier] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 audit_logger: Optional[EnhancedLogger] = None):
        self.config = config or get_config()
        if security_manager is None and self.config.security.encryption_enabled:
            security_manager = SecurityManager()

        self.notifier = notifier or SyncNotifier()
        self.audit_logger = audit_logger or get_logger()
        self.store = EventStorage(self.config.storage.database_path, security_manager=security_manager)

        self._session = session
        self._owns_session = session is None
        self.token_vault: Optional[TokenVault] = None
        self.provider_client: Optional[ProviderClient] = None
        self.orchestrator: Optional[SyncOrchestrator] = None

    @classmethod
    def from_config_dir(cls, config_dir: Union[str, Path] = "config", **kwargs) -> "CalendarSyncService":
        manager = get_config_manager(config_dir)
        return cls(manager.load_config(), security_manager=manager.get_security_manager(), **kwargs)

    async def __aenter__(self) -> "CalendarSyncService":
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._build()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def _build(self):
        self.token_vault = TokenVault(self.store, self._session, self.config.oauth)
        self.provider_client = ProviderClient(self.token_vault, self._session, self.config.provider)
        self.orchestrator = SyncOrchestrator(
            self.store, self.provider_client,
            notifier=self.notifier,
            config=self.config.sync_layer,
            provider_name=self.config.provider.name,
            audit_logger=self.audit_logger
        )
        logger.debug(f"Calendar sync service ready (database={self.store.database_path})")

    def create_oauth_flow(self, presenter: Optional[Presenter] = None) -> OAuthFlowController:
        """認可リクエスト1回分のコントローラー（コールバック処理にも新しいものを使ってよい）"""
        if self.token_vault is None:
            raise RuntimeError("CalendarSyncService must be entered with 'async with' before use")

        return OAuthFlowController(
            self.store, self.token_vault, self._session, self.notifier, self.config.oauth,
            presenter=presenter,
            provider=self.config.provider.name,
            default_timezone=self.config.sync_layer.default_timezone,
            error_handler=self.orchestrator.error_handler,
            audit_logger=self.audit_logger
        )

    async def migrate(self):
        await self.store.apply_schema()

    async def cleanup(self):
        await self.store.cleanup_old_data(retention_days=self.config.storage.retention_days)

    async def health(self) -> Dict[str, Any]:
        """ストア統計・監査メトリクス・通知/エラー集計"""
        report = {
            'storage': await self.store.get_storage_statistics(),
            'audit': self.audit_logger.get_health_status(),
            'notifications': self.notifier.get_statistics(),
        }
        if self.orchestrator is not None:
            report['errors'] = self.orchestrator.error_handler.get_statistics()
        return report
