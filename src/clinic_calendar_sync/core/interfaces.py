"""
外部協調者インターフェース
ローカルストア（予約管理・接続・マッピング）の契約
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import (
    Connection, LocalEvent, OAuthState, PersonalBlock, SyncMapping, SyncState, TokenRecord
)
from .time_representation import TimeRange


class LocalStore(ABC):
    """同期エンジンが読み書きするローカルストア

    スキーマはマイグレーションで事前に用意されている前提で、
    同期処理の中でテーブルを作成することはない。
    """

    # 予約（外部の予約管理が所有）

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Optional[LocalEvent]:
        pass

    @abstractmethod
    async def list_appointments_in_range(self, clinician_id: str, time_range: TimeRange) -> List[LocalEvent]:
        pass

    @abstractmethod
    async def update_appointment(self, appointment_id: str, fields: Dict[str, Any]) -> bool:
        """external_event_id / last_synced_at / 競合時の内容・ステータスのみ書き込む"""
        pass

    @abstractmethod
    async def create_appointment(self, event: LocalEvent) -> LocalEvent:
        pass

    # 接続

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    async def find_connection(self, clinician_id: str, provider: str) -> Optional[Connection]:
        """(clinician, provider) の最新接続（無効化済みも含む）"""
        pass

    @abstractmethod
    async def upsert_connection(self, connection: Connection) -> Connection:
        pass

    @abstractmethod
    async def update_connection_state(self, connection_id: str, sync_state: SyncState,
                                      last_error: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def advance_last_synced_at(self, connection_id: str, synced_at: datetime) -> datetime:
        """last_synced_at を単調増加で更新し、更新後の値を返す"""
        pass

    # トークン

    @abstractmethod
    async def get_token_record(self, connection_id: str) -> Optional[TokenRecord]:
        pass

    @abstractmethod
    async def save_token_record(self, record: TokenRecord) -> None:
        """単一トランザクションで置き換える（半端な状態は観測されない）"""
        pass

    @abstractmethod
    async def clear_refresh_token(self, connection_id: str) -> None:
        pass

    @abstractmethod
    async def delete_token_record(self, connection_id: str) -> None:
        pass

    # 同期マッピング

    @abstractmethod
    async def upsert_sync_mapping(self, mapping: SyncMapping) -> SyncMapping:
        """(connection, external_event_id) をキーにupsert"""
        pass

    @abstractmethod
    async def list_sync_mappings(self, connection_id: str) -> List[SyncMapping]:
        pass

    @abstractmethod
    async def get_sync_mapping_by_local(self, connection_id: str, local_event_id: str) -> Optional[SyncMapping]:
        pass

    @abstractmethod
    async def find_sync_mapping_for_appointment(self, local_event_id: str) -> Optional[SyncMapping]:
        pass

    @abstractmethod
    async def delete_sync_mapping(self, connection_id: str, external_event_id: str) -> None:
        pass

    # プレースホルダー・OAuth一時状態・ログ

    @abstractmethod
    async def upsert_personal_block(self, block: PersonalBlock) -> None:
        pass

    @abstractmethod
    async def list_personal_blocks(self, clinician_id: str, time_range: TimeRange) -> List[PersonalBlock]:
        pass

    @abstractmethod
    async def delete_personal_block(self, connection_id: str, external_event_id: str) -> None:
        pass

    @abstractmethod
    async def save_oauth_state(self, state: OAuthState) -> None:
        pass

    @abstractmethod
    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        """取得と同時に削除（一度きり）"""
        pass

    @abstractmethod
    async def log_sync_action(self, event_id: Optional[str], action: str, source: str, target: str,
                              status: str, error_message: Optional[str] = None) -> None:
        pass
