"""
イベントストレージシステム - ローカルストアの参照実装
SQLite（aiosqlite）による予約・接続・トークン・同期マッピング・同期ログの永続化
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite

from ...config.enhanced_config import SecurityManager
from ...core.interfaces import LocalStore
from ...core.models import (
    AppointmentStatus, Connection, LocalEvent, OAuthState, PersonalBlock,
    SyncDirection, SyncMapping, SyncState, TokenRecord
)
from ...core.time_representation import TimeRange, TimeRepresentation, from_storage, to_storage

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS appointments (
        id TEXT PRIMARY KEY,
        clinician_id TEXT NOT NULL,
        start_at TEXT NOT NULL,
        end_at TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        notes TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'scheduled',
        external_event_id TEXT,
        last_synced_at TEXT,
        last_modified TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS connections (
        id TEXT PRIMARY KEY,
        clinician_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        account_email TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        scopes TEXT NOT NULL DEFAULT '[]',
        timezone TEXT NOT NULL,
        last_synced_at TEXT,
        last_error TEXT,
        sync_state TEXT NOT NULL DEFAULT 'stopped',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        connection_id TEXT PRIMARY KEY,
        access_token TEXT NOT NULL,
        refresh_token TEXT,
        expires_at TEXT NOT NULL,
        token_type TEXT NOT NULL DEFAULT 'Bearer',
        updated_at TEXT NOT NULL,
        FOREIGN KEY (connection_id) REFERENCES connections(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        connection_id TEXT NOT NULL,
        local_event_id TEXT NOT NULL,
        external_event_id TEXT NOT NULL,
        direction TEXT NOT NULL,
        content_hash TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (connection_id, external_event_id),
        UNIQUE (connection_id, local_event_id),
        FOREIGN KEY (connection_id) REFERENCES connections(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_states (
        state TEXT PRIMARY KEY,
        clinician_id TEXT NOT NULL,
        provider TEXT NOT NULL,
        code_verifier TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        timezone TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS personal_blocks (
        connection_id TEXT NOT NULL,
        external_event_id TEXT NOT NULL,
        clinician_id TEXT NOT NULL,
        start_at TEXT NOT NULL,
        end_at TEXT NOT NULL,
        display_title TEXT NOT NULL DEFAULT 'Personal Block',
        updated_at TEXT NOT NULL,
        PRIMARY KEY (connection_id, external_event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT,
        action TEXT NOT NULL,
        source TEXT NOT NULL,
        target TEXT NOT NULL,
        status TEXT NOT NULL,
        error_message TEXT,
        timestamp TEXT NOT NULL
    )
    """,
]

INDEX_STATEMENTS = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_connections_active_owner "
    "ON connections(clinician_id, provider) WHERE is_active = 1",
    "CREATE INDEX IF NOT EXISTS idx_appointments_clinician_start ON appointments(clinician_id, start_at)",
    "CREATE INDEX IF NOT EXISTS idx_sync_mappings_local ON sync_mappings(local_event_id)",
    "CREATE INDEX IF NOT EXISTS idx_personal_blocks_clinician ON personal_blocks(clinician_id, start_at)",
    "CREATE INDEX IF NOT EXISTS idx_sync_logs_event_id ON sync_logs(event_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_logs_timestamp ON sync_logs(timestamp)",
]

APPOINTMENT_FIELD_COLUMNS = {
    'external_event_id': 'external_event_id',
    'last_synced_at': 'last_synced_at',
    'start': 'start_at',
    'end': 'end_at',
    'title': 'title',
    'notes': 'notes',
    'status': 'status',
    'last_modified': 'last_modified',
}


class EventStorage(LocalStore):
    """イベントストレージ管理システム"""

    def __init__(self, database_path: Union[str, Path] = "data/calendar_sync.db",
                 security_manager: Optional[SecurityManager] = None,
                 clock=TimeRepresentation.now_utc):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.security_manager = security_manager
        self.clock = clock

    async def apply_schema(self):
        """マイグレーション適用（デプロイ時・テスト準備時のみ明示的に実行）"""
        async with aiosqlite.connect(self.database_path) as db:
            for statement in SCHEMA_STATEMENTS + INDEX_STATEMENTS:
                await db.execute(statement)
            await db.commit()

        logger.info(f"Calendar sync schema applied: {self.database_path}")

    def _connect(self):
        return aiosqlite.connect(self.database_path)

    # ------------------------------------------------------------------ 予約

    async def get_appointment(self, appointment_id: str) -> Optional[LocalEvent]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,))
            row = await cursor.fetchone()
            return self._row_to_local_event(row) if row else None

    async def list_appointments_in_range(self, clinician_id: str, time_range: TimeRange) -> List[LocalEvent]:
        sql = """
        SELECT * FROM appointments
        WHERE clinician_id = ? AND start_at < ? AND end_at > ?
        ORDER BY start_at ASC
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (clinician_id, to_storage(time_range.end), to_storage(time_range.start)))
            rows = await cursor.fetchall()
            return [self._row_to_local_event(row) for row in rows]

    async def create_appointment(self, event: LocalEvent) -> LocalEvent:
        if event.last_modified is None:
            event.last_modified = self.clock()

        sql = """
        INSERT INTO appointments (
            id, clinician_id, start_at, end_at, title, notes, status,
            external_event_id, last_synced_at, last_modified
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        async with self._connect() as db:
            await db.execute(sql, (
                event.id, event.clinician_id, to_storage(event.start), to_storage(event.end),
                event.title, event.notes, event.status.value, event.external_event_id,
                to_storage(event.last_synced_at), to_storage(event.last_modified)
            ))
            await db.commit()

        logger.debug(f"Appointment created: {event.id}")
        return event

    async def update_appointment(self, appointment_id: str, fields: Dict[str, Any]) -> bool:
        assignments = []
        params: List[Any] = []

        for name, value in fields.items():
            column = APPOINTMENT_FIELD_COLUMNS.get(name)
            if column is None:
                raise ValueError(f"Appointment field not writable by sync engine: {name}")
            if isinstance(value, datetime):
                value = to_storage(value)
            elif isinstance(value, AppointmentStatus):
                value = value.value
            assignments.append(f"{column} = ?")
            params.append(value)

        if not assignments:
            return False

        params.append(appointment_id)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE appointments SET {', '.join(assignments)} WHERE id = ?", params
            )
            await db.commit()
            return cursor.rowcount > 0

    def _row_to_local_event(self, row: aiosqlite.Row) -> LocalEvent:
        return LocalEvent(
            id=row['id'],
            clinician_id=row['clinician_id'],
            start=from_storage(row['start_at']),
            end=from_storage(row['end_at']),
            title=row['title'] or '',
            notes=row['notes'] or '',
            status=AppointmentStatus(row['status']),
            external_event_id=row['external_event_id'],
            last_synced_at=from_storage(row['last_synced_at']),
            last_modified=from_storage(row['last_modified'])
        )

    # ------------------------------------------------------------------ 接続

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM connections WHERE id = ?", (connection_id,))
            row = await cursor.fetchone()
            return self._row_to_connection(row) if row else None

    async def find_connection(self, clinician_id: str, provider: str) -> Optional[Connection]:
        sql = """
        SELECT * FROM connections WHERE clinician_id = ? AND provider = ?
        ORDER BY is_active DESC, updated_at DESC LIMIT 1
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (clinician_id, provider))
            row = await cursor.fetchone()
            return self._row_to_connection(row) if row else None

    async def upsert_connection(self, connection: Connection) -> Connection:
        now = self.clock()
        connection.created_at = connection.created_at or now
        connection.updated_at = now

        sql = """
        INSERT INTO connections (
            id, clinician_id, provider, account_email, is_active, scopes, timezone,
            last_synced_at, last_error, sync_state, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            account_email = excluded.account_email,
            is_active = excluded.is_active,
            scopes = excluded.scopes,
            timezone = excluded.timezone,
            last_error = excluded.last_error,
            sync_state = excluded.sync_state,
            updated_at = excluded.updated_at
        """
        async with self._connect() as db:
            await db.execute(sql, (
                connection.id, connection.clinician_id, connection.provider,
                connection.account_email, int(connection.is_active), json.dumps(connection.scopes),
                connection.timezone, to_storage(connection.last_synced_at), connection.last_error,
                connection.sync_state.value, to_storage(connection.created_at),
                to_storage(connection.updated_at)
            ))
            await db.commit()

        logger.debug(f"Connection stored: {connection.id} (active={connection.is_active})")
        return connection

    async def update_connection_state(self, connection_id: str, sync_state: SyncState,
                                      last_error: Optional[str] = None) -> None:
        sql = "UPDATE connections SET sync_state = ?, last_error = ?, updated_at = ? WHERE id = ?"
        async with self._connect() as db:
            await db.execute(sql, (sync_state.value, last_error, to_storage(self.clock()), connection_id))
            await db.commit()

    async def advance_last_synced_at(self, connection_id: str, synced_at: datetime) -> datetime:
        """比較して大きい方のみ書き込む（遅れて終わった古いパスで巻き戻さない）"""
        value = to_storage(synced_at)
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE connections SET last_synced_at = ?
                WHERE id = ? AND (last_synced_at IS NULL OR last_synced_at < ?)
                """,
                (value, connection_id, value)
            )
            await db.commit()
            cursor = await db.execute("SELECT last_synced_at FROM connections WHERE id = ?", (connection_id,))
            row = await cursor.fetchone()

        return from_storage(row[0]) if row and row[0] else synced_at

    def _row_to_connection(self, row: aiosqlite.Row) -> Connection:
        return Connection(
            id=row['id'],
            clinician_id=row['clinician_id'],
            provider=row['provider'],
            account_email=row['account_email'],
            is_active=bool(row['is_active']),
            scopes=json.loads(row['scopes'] or '[]'),
            timezone=row['timezone'],
            last_synced_at=from_storage(row['last_synced_at']),
            last_error=row['last_error'],
            sync_state=SyncState(row['sync_state']),
            created_at=from_storage(row['created_at']),
            updated_at=from_storage(row['updated_at'])
        )

    # ------------------------------------------------------------------ トークン

    async def get_token_record(self, connection_id: str) -> Optional[TokenRecord]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM oauth_tokens WHERE connection_id = ?", (connection_id,))
            row = await cursor.fetchone()

        if not row:
            return None

        return TokenRecord(
            connection_id=row['connection_id'],
            access_token=self._decrypt(row['access_token']),
            refresh_token=self._decrypt(row['refresh_token']) if row['refresh_token'] else None,
            expires_at=from_storage(row['expires_at']),
            token_type=row['token_type']
        )

    async def save_token_record(self, record: TokenRecord) -> None:
        sql = """
        INSERT INTO oauth_tokens (connection_id, access_token, refresh_token, expires_at, token_type, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(connection_id) DO UPDATE SET
            access_token = excluded.access_token,
            refresh_token = excluded.refresh_token,
            expires_at = excluded.expires_at,
            token_type = excluded.token_type,
            updated_at = excluded.updated_at
        """
        async with self._connect() as db:
            await db.execute(sql, (
                record.connection_id,
                self._encrypt(record.access_token),
                self._encrypt(record.refresh_token) if record.refresh_token else None,
                to_storage(record.expires_at),
                record.token_type,
                to_storage(self.clock())
            ))
            await db.commit()

    async def clear_refresh_token(self, connection_id: str) -> None:
        async with self._connect() as db:
            await db.execute("UPDATE oauth_tokens SET refresh_token = NULL, updated_at = ? WHERE connection_id = ?",
                             (to_storage(self.clock()), connection_id))
            await db.commit()

    async def delete_token_record(self, connection_id: str) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM oauth_tokens WHERE connection_id = ?", (connection_id,))
            await db.commit()

    def _encrypt(self, value: str) -> str:
        return self.security_manager.encrypt_value(value) if self.security_manager else value

    def _decrypt(self, value: str) -> str:
        return self.security_manager.decrypt_value(value) if self.security_manager else value

    # ------------------------------------------------------------------ 同期マッピング

    async def upsert_sync_mapping(self, mapping: SyncMapping) -> SyncMapping:
        now = self.clock()
        mapping.updated_at = mapping.updated_at or now
        mapping.created_at = mapping.created_at or now

        async with self._connect() as db:
            # 同じ予約が別の外部IDに付け替えられた場合は古いリンクを外す
            await db.execute(
                "DELETE FROM sync_mappings WHERE connection_id = ? AND local_event_id = ? AND external_event_id != ?",
                (mapping.connection_id, mapping.local_event_id, mapping.external_event_id)
            )
            await db.execute(
                """
                INSERT INTO sync_mappings (
                    connection_id, local_event_id, external_event_id, direction,
                    content_hash, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(connection_id, external_event_id) DO UPDATE SET
                    local_event_id = excluded.local_event_id,
                    direction = excluded.direction,
                    content_hash = excluded.content_hash,
                    updated_at = excluded.updated_at
                """,
                (mapping.connection_id, mapping.local_event_id, mapping.external_event_id,
                 mapping.direction.value, mapping.content_hash,
                 to_storage(mapping.created_at), to_storage(mapping.updated_at))
            )
            await db.commit()

        return mapping

    async def list_sync_mappings(self, connection_id: str) -> List[SyncMapping]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM sync_mappings WHERE connection_id = ?", (connection_id,))
            rows = await cursor.fetchall()
            return [self._row_to_mapping(row) for row in rows]

    async def get_sync_mapping_by_local(self, connection_id: str, local_event_id: str) -> Optional[SyncMapping]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM sync_mappings WHERE connection_id = ? AND local_event_id = ?",
                (connection_id, local_event_id)
            )
            row = await cursor.fetchone()
            return self._row_to_mapping(row) if row else None

    async def find_sync_mapping_for_appointment(self, local_event_id: str) -> Optional[SyncMapping]:
        sql = """
        SELECT m.* FROM sync_mappings m
        JOIN connections c ON c.id = m.connection_id
        WHERE m.local_event_id = ?
        ORDER BY c.is_active DESC, m.updated_at DESC LIMIT 1
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (local_event_id,))
            row = await cursor.fetchone()
            return self._row_to_mapping(row) if row else None

    async def delete_sync_mapping(self, connection_id: str, external_event_id: str) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM sync_mappings WHERE connection_id = ? AND external_event_id = ?",
                             (connection_id, external_event_id))
            await db.commit()

    def _row_to_mapping(self, row: aiosqlite.Row) -> SyncMapping:
        return SyncMapping(
            local_event_id=row['local_event_id'],
            external_event_id=row['external_event_id'],
            connection_id=row['connection_id'],
            direction=SyncDirection(row['direction']),
            content_hash=row['content_hash'],
            created_at=from_storage(row['created_at']),
            updated_at=from_storage(row['updated_at'])
        )

    # ------------------------------------------------------------------ プレースホルダー

    async def upsert_personal_block(self, block: PersonalBlock) -> None:
        sql = """
        INSERT INTO personal_blocks (
            connection_id, external_event_id, clinician_id, start_at, end_at, display_title, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(connection_id, external_event_id) DO UPDATE SET
            start_at = excluded.start_at,
            end_at = excluded.end_at,
            updated_at = excluded.updated_at
        """
        async with self._connect() as db:
            await db.execute(sql, (
                block.connection_id, block.external_event_id, block.clinician_id,
                to_storage(block.start), to_storage(block.end), block.display_title,
                to_storage(block.updated_at or self.clock())
            ))
            await db.commit()

    async def list_personal_blocks(self, clinician_id: str, time_range: TimeRange) -> List[PersonalBlock]:
        sql = """
        SELECT * FROM personal_blocks
        WHERE clinician_id = ? AND start_at < ? AND end_at > ?
        ORDER BY start_at ASC
        """
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, (clinician_id, to_storage(time_range.end), to_storage(time_range.start)))
            rows = await cursor.fetchall()

        return [
            PersonalBlock(
                connection_id=row['connection_id'],
                external_event_id=row['external_event_id'],
                clinician_id=row['clinician_id'],
                start=from_storage(row['start_at']),
                end=from_storage(row['end_at']),
                display_title=row['display_title'],
                updated_at=from_storage(row['updated_at'])
            )
            for row in rows
        ]

    async def delete_personal_block(self, connection_id: str, external_event_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM personal_blocks WHERE connection_id = ? AND external_event_id = ?",
                (connection_id, external_event_id)
            )
            await db.commit()

    # ------------------------------------------------------------------ OAuth一時状態

    async def save_oauth_state(self, state: OAuthState) -> None:
        sql = """
        INSERT INTO oauth_states (
            state, clinician_id, provider, code_verifier, redirect_uri, timezone, expires_at, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """
        async with self._connect() as db:
            await db.execute(sql, (
                state.state, state.clinician_id, state.provider,
                self._encrypt(state.code_verifier), state.redirect_uri, state.timezone,
                to_storage(state.expires_at), to_storage(state.created_at or self.clock())
            ))
            await db.commit()

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT * FROM oauth_states WHERE state = ?", (state,))
            row = await cursor.fetchone()
            if row:
                await db.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
            await db.commit()

        if not row:
            return None

        return OAuthState(
            state=row['state'],
            clinician_id=row['clinician_id'],
            provider=row['provider'],
            code_verifier=self._decrypt(row['code_verifier']),
            redirect_uri=row['redirect_uri'],
            timezone=row['timezone'],
            expires_at=from_storage(row['expires_at']),
            created_at=from_storage(row['created_at'])
        )

    # ------------------------------------------------------------------ 同期ログ

    async def log_sync_action(self, event_id: Optional[str], action: str, source: str, target: str,
                              status: str, error_message: Optional[str] = None) -> None:
        sql = """
        INSERT INTO sync_logs (event_id, action, source, target, status, error_message, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        async with self._connect() as db:
            await db.execute(sql, (event_id, action, source, target, status, error_message,
                                   to_storage(self.clock())))
            await db.commit()

    async def get_sync_logs(self, event_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """同期ログ取得"""
        if event_id:
            sql = "SELECT * FROM sync_logs WHERE event_id = ? ORDER BY id DESC LIMIT ?"
            params = (event_id, limit)
        else:
            sql = "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?"
            params = (limit,)

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def cleanup_old_data(self, retention_days: int = 30):
        """古い同期ログと期限切れOAuth状態の削除"""
        now = self.clock()
        cutoff = now - timedelta(days=retention_days)

        try:
            async with self._connect() as db:
                await db.execute("DELETE FROM sync_logs WHERE timestamp < ?", (to_storage(cutoff),))
                await db.execute("DELETE FROM oauth_states WHERE expires_at < ?", (to_storage(now),))
                await db.commit()
            logger.info(f"Cleaned up data older than {retention_days} days")

        except aiosqlite.Error as e:
            logger.error(f"Failed to cleanup old data: {e}")

    async def get_storage_statistics(self) -> Dict[str, Any]:
        """ストレージ統計情報"""
        queries = {
            'total_appointments': "SELECT COUNT(*) FROM appointments",
            'synced_appointments': "SELECT COUNT(*) FROM appointments WHERE external_event_id IS NOT NULL",
            'active_connections': "SELECT COUNT(*) FROM connections WHERE is_active = 1",
            'sync_mappings': "SELECT COUNT(*) FROM sync_mappings",
            'personal_blocks': "SELECT COUNT(*) FROM personal_blocks",
            'total_sync_logs': "SELECT COUNT(*) FROM sync_logs",
        }

        try:
            stats: Dict[str, Any] = {}
            async with self._connect() as db:
                for name, sql in queries.items():
                    cursor = await db.execute(sql)
                    stats[name] = (await cursor.fetchone())[0]

            stats['database_size_mb'] = self.database_path.stat().st_size / (1024 * 1024)
            return stats

        except aiosqlite.Error as e:
            logger.error(f"Failed to get storage statistics: {e}")
            return {}
