"""
同期オーケストレーター - 予約 ⇔ 外部カレンダーの双方向同期
プッシュ（予約の外部反映）・プル（外部の予定の取り込み）・競合解決・結果集計
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ...config.enhanced_config import SyncLayerConfig
from ...core.exceptions import (
    AUTH_ERRORS, CalendarSyncError, ConnectionInactive, EventNotFound, ReauthorizationRequired
)
from ...core.interfaces import LocalStore
from ...core.models import (
    AppointmentStatus, Connection, ExternalEvent, LocalEvent, PersonalBlock,
    SyncDirection, SyncMapping, SyncState
)
from ...core.time_representation import TimeRange, TimeRepresentation
from ...utils.enhanced_logger import EnhancedLogger, get_logger
from ..notification_layer.sync_notifier import SyncEventType, SyncNotifier
from ..provider_layer.error_handler import CategorizedError, ErrorHandler
from ..provider_layer.provider_client import EventListing, ProviderClient
from ..provider_layer.retry_policy import RetryPolicy
from .conflict_resolver import ConflictResolver, Winner

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """同期パスの方向"""
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class UnmatchedEventPolicy(Enum):
    """対応する予約のない外部予定の扱い"""
    PLACEHOLDER = "placeholder"
    CREATE = "create"
    IGNORE = "ignore"


class ItemStatus(Enum):
    """バッチ内の項目ステータス"""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass
class PushResult:
    """単一プッシュの結果"""
    local_event_id: str
    action: str  # created, updated, unchanged, skipped, deleted
    external_event_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class ItemOutcome:
    """バッチ内1件の結果"""
    local_event_id: str
    status: ItemStatus
    external_event_id: Optional[str] = None
    action: Optional[str] = None
    error: Optional[CategorizedError] = None
    auth_error: Optional[ReauthorizationRequired] = field(default=None, repr=False)


@dataclass
class BatchResult:
    """プッシュバッチの結果（ID をキーにする。順序は保証しない）"""
    outcomes: Dict[str, ItemOutcome] = field(default_factory=dict)
    aborted: bool = False
    cancelled: bool = False
    auth_error: Optional[CategorizedError] = None

    def external_ids(self) -> Dict[str, Optional[str]]:
        return {
            event_id: (outcome.external_event_id if outcome.status == ItemStatus.SUCCESS else None)
            for event_id, outcome in self.outcomes.items()
        }

    def count(self, status: ItemStatus) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.status == status)

    def count_action(self, action: str) -> int:
        return sum(1 for outcome in self.outcomes.values() if outcome.action == action)

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [
            {'local_event_id': outcome.local_event_id, **outcome.error.to_dict()}
            for outcome in self.outcomes.values() if outcome.error
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created': self.count_action('created'),
            'updated': self.count_action('updated'),
            'unchanged': self.count_action('unchanged'),
            'skipped': self.count(ItemStatus.SKIPPED),
            'failed': self.count(ItemStatus.FAILED),
            'not_attempted': self.count(ItemStatus.NOT_ATTEMPTED),
            'aborted': self.aborted,
            'cancelled': self.cancelled,
            'errors': self.errors,
        }

    def summary(self) -> str:
        counts = self.to_dict()
        return (f"Push: {counts['created']} created, {counts['updated']} updated, "
                f"{counts['unchanged']} unchanged, {counts['skipped']} skipped, "
                f"{counts['failed']} failed, {counts['not_attempted']} not attempted")


@dataclass
class PullResult:
    """プル結果"""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    placeholders: int = 0
    blocks_removed: int = 0
    pushed: int = 0
    unchanged: int = 0
    truncated: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'placeholders': self.placeholders,
            'blocks_removed': self.blocks_removed,
            'pushed': self.pushed,
            'unchanged': self.unchanged,
            'truncated': self.truncated,
            'errors': list(self.errors),
        }

    def summary(self) -> str:
        return (f"Pull: {self.created} created, {self.updated} updated, {self.deleted} deleted, "
                f"{self.placeholders} placeholders ({self.blocks_removed} removed), "
                f"{self.pushed} pushed, {self.unchanged} unchanged, "
                f"{len(self.errors)} errors")


@dataclass
class SyncPassResult:
    """双方向同期パスの結果"""
    connection_id: str
    push: Optional[BatchResult] = None
    pull: Optional[PullResult] = None
    sync_state: SyncState = SyncState.STOPPED
    last_synced_at: Optional[datetime] = None
    error: Optional[CategorizedError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'push': self.push.to_dict() if self.push else None,
            'pull': self.pull.to_dict() if self.pull else None,
            'sync_state': self.sync_state.value,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'error': self.error.to_dict() if self.error else None,
        }


@dataclass
class AppointmentSyncStatus:
    """UI向け: 予約の同期状況"""
    appointment_id: str
    is_synced: bool
    external_event_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None


@dataclass
class ConnectionStateView:
    """UI向け: 接続の状態"""
    connection_id: str
    is_active: bool
    sync_state: SyncState
    account_email: Optional[str]
    last_synced_at: Optional[datetime]
    last_error: Optional[str]
    requires_reauthorization: bool


class SyncOrchestrator:
    """同期エンジン本体

    同期パスは短命の呼び出しとして都度実行する（常駐スケジューラは持たない）。
    認可エラーは自動で再試行せず、接続を error 状態にしてUIへ通知する。
    """

    def __init__(self, store: LocalStore, provider_client: ProviderClient,
                 notifier: Optional[SyncNotifier] = None,
                 conflict_resolver: Optional[ConflictResolver] = None,
                 config: Optional[SyncLayerConfig] = None,
                 provider_name: str = "google",
                 error_handler: Optional[ErrorHandler] = None,
                 audit_logger: Optional[EnhancedLogger] = None,
                 clock=TimeRepresentation.now_utc,
                 sleep=asyncio.sleep):
        self.store = store
        self.provider_client = provider_client
        self.config = config or SyncLayerConfig()
        self.notifier = notifier or SyncNotifier()
        self.conflict_resolver = conflict_resolver or ConflictResolver(self.config.conflict_resolution)
        self.provider_name = provider_name
        self.error_handler = error_handler or ErrorHandler()
        self.audit_logger = audit_logger or get_logger()
        self.retry_policy = RetryPolicy.from_config(self.config.retry_policy)
        self.mode = SyncMode(self.config.direction)
        self.unmatched_policy = UnmatchedEventPolicy(self.config.unmatched_event_policy)
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------ 接続

    async def _active_connection(self, connection_id: str) -> Connection:
        connection = await self.store.get_connection(connection_id)
        if connection is None or not connection.is_active:
            raise ConnectionInactive(f"Connection {connection_id} is not active")
        return connection

    async def _connection_for(self, clinician_id: str, connection_id: Optional[str]) -> Connection:
        if connection_id:
            connection = await self._active_connection(connection_id)
            if connection.clinician_id != clinician_id:
                raise ConnectionInactive(
                    f"Connection {connection_id} does not belong to clinician {clinician_id}"
                )
            return connection

        connection = await self.store.find_connection(clinician_id, self.provider_name)
        if connection is None or not connection.is_active:
            raise ConnectionInactive(f"Clinician {clinician_id} has no active {self.provider_name} connection")
        return connection

    async def _on_auth_failure(self, connection_id: str, error: ReauthorizationRequired) -> CategorizedError:
        """接続を error にしてUIへ再認可を促す"""
        categorized = self.error_handler.handle_error(error, {'connection_id': connection_id})
        await self.store.update_connection_state(connection_id, SyncState.ERROR, last_error=error.message)
        await self.notifier.notify(SyncEventType.AUTH_ERROR, categorized.to_dict(), connection_id)
        logger.error(f"Sync halted for connection {connection_id}: reauthorization required")
        return categorized

    # ------------------------------------------------------------------ プッシュ

    async def push_one(self, local_event_id: str, connection_id: Optional[str] = None) -> PushResult:
        """予約1件を外部カレンダーへ反映"""
        try:
            return await self._push_one(local_event_id, connection_id)
        except ReauthorizationRequired as e:
            await self._on_auth_failure(e.connection_id, e)
            raise

    async def _push_one(self, local_event_id: str, connection_id: Optional[str]) -> PushResult:
        appointment = await self.store.get_appointment(local_event_id)
        if appointment is None:
            raise EventNotFound(f"Appointment {local_event_id} not found")

        connection = await self._connection_for(appointment.clinician_id, connection_id)
        mapping = await self.store.get_sync_mapping_by_local(connection.id, appointment.id)

        if not appointment.is_push_eligible:
            if appointment.status == AppointmentStatus.CANCELLED and mapping:
                await self._delete_remote(connection, appointment, mapping)
                return PushResult(appointment.id, 'deleted', reason="appointment cancelled")
            logger.debug(f"Skipping appointment {appointment.id} with status {appointment.status.value}")
            return PushResult(appointment.id, 'skipped', reason=f"status {appointment.status.value}")

        local_hash = appointment.content_hash()

        if mapping:
            if mapping.content_hash == local_hash and appointment.external_event_id == mapping.external_event_id:
                return PushResult(appointment.id, 'unchanged', external_event_id=mapping.external_event_id)

            try:
                await self.retry_policy.run(
                    lambda: self.provider_client.update_event(
                        connection.id, mapping.external_event_id, appointment, connection.timezone
                    ),
                    description=f"update_event({appointment.id})", sleep=self.sleep
                )
                external_id = mapping.external_event_id
                action = 'updated'
            except EventNotFound:
                logger.warning(
                    f"External event {mapping.external_event_id} vanished, recreating for appointment {appointment.id}"
                )
                await self.store.delete_sync_mapping(connection.id, mapping.external_event_id)
                external_id = await self._create_remote(connection, appointment)
                action = 'created'
        else:
            external_id = await self._create_remote(connection, appointment)
            action = 'created'

        now = self.clock()
        await self.store.upsert_sync_mapping(SyncMapping(
            local_event_id=appointment.id,
            external_event_id=external_id,
            connection_id=connection.id,
            direction=mapping.direction if mapping and action == 'updated' else SyncDirection.OUTBOUND,
            content_hash=local_hash,
            created_at=mapping.created_at if mapping and action == 'updated' else now,
            updated_at=now
        ))
        await self.store.update_appointment(appointment.id, {
            'external_event_id': external_id,
            'last_synced_at': now,
        })
        await self.store.log_sync_action(appointment.id, action, 'local', self.provider_name, 'success')

        return PushResult(appointment.id, action, external_event_id=external_id)

    async def _create_remote(self, connection: Connection, appointment: LocalEvent) -> str:
        return await self.retry_policy.run(
            lambda: self.provider_client.create_event(connection.id, appointment, connection.timezone),
            description=f"create_event({appointment.id})", sleep=self.sleep
        )

    async def _delete_remote(self, connection: Connection, appointment: LocalEvent, mapping: SyncMapping):
        """キャンセルされた予約の外部イベントを削除"""
        await self.retry_policy.run(
            lambda: self.provider_client.delete_event(connection.id, mapping.external_event_id),
            description=f"delete_event({appointment.id})", sleep=self.sleep
        )
        await self.store.delete_sync_mapping(connection.id, mapping.external_event_id)
        await self.store.update_appointment(appointment.id, {
            'external_event_id': None,
            'last_synced_at': self.clock(),
        })
        await self.store.log_sync_action(appointment.id, 'delete', 'local', self.provider_name, 'success')

    async def push_batch(self, local_event_ids: Iterable[str], connection_id: Optional[str] = None,
                         cancel_event: Optional[asyncio.Event] = None) -> BatchResult:
        """同時実行数を絞ってプッシュ。認可エラーで残りを打ち切る"""
        ids = list(dict.fromkeys(local_event_ids))
        result = BatchResult()
        concurrency = max(1, int(self.config.batch_concurrency))
        operation = self.audit_logger.log_operation_start("push_batch", items=len(ids), connection_id=connection_id)

        windows = [ids[i:i + concurrency] for i in range(0, len(ids), concurrency)]
        for index, window in enumerate(windows):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break

            outcomes = await asyncio.gather(*(self._push_item(event_id, connection_id) for event_id in window))
            for outcome in outcomes:
                result.outcomes[outcome.local_event_id] = outcome

            auth_failures = [outcome.auth_error for outcome in outcomes if outcome.auth_error]
            if auth_failures:
                result.aborted = True
                error = auth_failures[0]
                result.auth_error = await self._on_auth_failure(error.connection_id, error)
                break

            if index < len(windows) - 1 and self.config.inter_batch_delay_seconds > 0:
                await self.sleep(self.config.inter_batch_delay_seconds)

        for event_id in ids:
            if event_id not in result.outcomes:
                result.outcomes[event_id] = ItemOutcome(event_id, ItemStatus.NOT_ATTEMPTED)

        self.audit_logger.log_operation_end(operation, success=not result.aborted, **{
            k: v for k, v in result.to_dict().items() if k != 'errors'
        })
        logger.info(result.summary())
        return result

    async def _push_item(self, local_event_id: str, connection_id: Optional[str]) -> ItemOutcome:
        try:
            pushed = await self._push_one(local_event_id, connection_id)
        except AUTH_ERRORS as e:
            return ItemOutcome(local_event_id, ItemStatus.FAILED,
                               error=self.error_handler.classify(e), auth_error=e)
        except Exception as e:
            categorized = self.error_handler.handle_error(e, {'local_event_id': local_event_id})
            logger.warning(f"Push failed for appointment {local_event_id}: {categorized.message}")
            await self.store.log_sync_action(local_event_id, 'push', 'local', self.provider_name,
                                             'failed', categorized.message)
            return ItemOutcome(local_event_id, ItemStatus.FAILED, error=categorized)

        status = ItemStatus.SKIPPED if pushed.action in ('skipped', 'deleted') else ItemStatus.SUCCESS
        return ItemOutcome(local_event_id, status, external_event_id=pushed.external_event_id, action=pushed.action)

    # ------------------------------------------------------------------ プル

    async def pull_range(self, connection_id: str, time_range: TimeRange) -> PullResult:
        """外部の予定を取り込み、対応する予約と突き合わせる"""
        try:
            return await self._pull_range(connection_id, time_range)
        except ReauthorizationRequired as e:
            await self._on_auth_failure(connection_id, e)
            raise

    async def _pull_range(self, connection_id: str, time_range: TimeRange) -> PullResult:
        connection = await self._active_connection(connection_id)
        operation = self.audit_logger.log_operation_start(
            "pull_range", connection_id=connection_id,
            time_min=time_range.start.isoformat(), time_max=time_range.end.isoformat()
        )

        try:
            result = await self._pull_listing(connection, time_range)
        except Exception as e:
            self.audit_logger.log_operation_end(operation, success=False, error_type=type(e).__name__)
            raise

        self.audit_logger.log_operation_end(operation, success=True, **{
            k: v for k, v in result.to_dict().items() if k != 'errors'
        }, errors=len(result.errors))
        logger.info(result.summary())
        return result

    async def _pull_listing(self, connection: Connection, time_range: TimeRange) -> PullResult:
        listing: EventListing = await self.retry_policy.run(
            lambda: self.provider_client.list_busy_events(connection.id, time_range, connection.timezone),
            description=f"list_busy_events({connection.id})", sleep=self.sleep
        )

        result = PullResult(truncated=listing.truncated)
        mappings = {m.external_event_id: m for m in await self.store.list_sync_mappings(connection.id)}
        seen = set()

        # 解釈できなかった予定は存在はしているので削除検知に回さない
        for external_id, error in listing.rejected:
            seen.add(external_id)
            self._record_pull_error(result, external_id, error)

        for remote in listing:
            seen.add(remote.external_id)
            try:
                await self._pull_one(connection, remote, mappings.get(remote.external_id), result)
            except AUTH_ERRORS:
                raise
            except Exception as e:
                self._record_pull_error(result, remote.external_id, e)

        if listing.truncated:
            logger.warning(f"Skipping remote deletion detection for {connection.id}: listing truncated")
        else:
            for external_id, mapping in mappings.items():
                if external_id in seen:
                    continue
                try:
                    await self._reconcile_missing(connection, mapping, time_range, result)
                except AUTH_ERRORS:
                    raise
                except Exception as e:
                    self._record_pull_error(result, external_id, e)

            result.blocks_removed = await self._prune_personal_blocks(connection, time_range, seen)

        return result

    async def _prune_personal_blocks(self, connection: Connection, time_range: TimeRange, seen: set) -> int:
        """一覧から消えた予定（削除・空き時間化・期間外へ移動）のプレースホルダーを外す"""
        removed = 0
        for block in await self.store.list_personal_blocks(connection.clinician_id, time_range):
            if block.connection_id != connection.id or block.external_event_id in seen:
                continue
            await self.store.delete_personal_block(connection.id, block.external_event_id)
            removed += 1

        if removed:
            logger.info(f"Removed {removed} stale personal block(s) for connection {connection.id}")
        return removed

    def _record_pull_error(self, result: PullResult, external_id: str, error: Exception):
        categorized = self.error_handler.handle_error(error, {'external_event_id': external_id})
        logger.warning(f"Pull failed for external event {external_id}: {categorized.message}")
        result.errors.append({'external_event_id': external_id, **categorized.to_dict()})

    async def _pull_one(self, connection: Connection, remote: ExternalEvent,
                        mapping: Optional[SyncMapping], result: PullResult):
        if mapping is None and remote.source_appointment_id:
            mapping = await self._relink(connection, remote)

        if mapping is None:
            await self._handle_unmatched(connection, remote, result)
            return

        local = await self.store.get_appointment(mapping.local_event_id)
        if local is None:
            # 予約側で削除済み
            await self.retry_policy.run(
                lambda: self.provider_client.delete_event(connection.id, remote.external_id),
                description=f"delete_event({remote.external_id})", sleep=self.sleep
            )
            await self.store.delete_sync_mapping(connection.id, remote.external_id)
            await self.store.log_sync_action(mapping.local_event_id, 'delete', 'local', self.provider_name, 'success')
            result.deleted += 1
            return

        if local.status == AppointmentStatus.CANCELLED:
            await self._delete_remote(connection, local, mapping)
            result.deleted += 1
            return

        remote_hash = remote.content_hash()
        local_hash = local.content_hash()

        if remote_hash == mapping.content_hash:
            if local_hash == mapping.content_hash or not local.is_push_eligible:
                result.unchanged += 1
                return
            # リモートは前回同期から変わっていない: ローカルの変更を外へ
            await self._push_local_version(connection, local, mapping)
            result.pushed += 1
            return

        if local_hash == remote_hash:
            await self._touch_mapping(mapping, remote_hash)
            result.unchanged += 1
            return

        winner = self.conflict_resolver.resolve(local, remote, mapping)
        if winner == Winner.REMOTE:
            await self._apply_remote(local, remote, mapping)
            result.updated += 1
        elif local.is_push_eligible:
            await self._push_local_version(connection, local, mapping)
            result.pushed += 1
        else:
            result.unchanged += 1

    async def _relink(self, connection: Connection, remote: ExternalEvent) -> Optional[SyncMapping]:
        """このエンジンが作成した外部イベントのマッピングが失われていた場合の再リンク"""
        local = await self.store.get_appointment(remote.source_appointment_id)
        if local is None or local.clinician_id != connection.clinician_id:
            return None

        existing = await self.store.get_sync_mapping_by_local(connection.id, local.id)
        if existing:
            return None

        now = self.clock()
        mapping = SyncMapping(
            local_event_id=local.id,
            external_event_id=remote.external_id,
            connection_id=connection.id,
            direction=SyncDirection.BIDIRECTIONAL,
            content_hash=None,
            created_at=now,
            updated_at=local.last_synced_at or now
        )
        await self.store.upsert_sync_mapping(mapping)
        logger.info(f"Relinked external event {remote.external_id} to appointment {local.id}")
        return mapping

    async def _handle_unmatched(self, connection: Connection, remote: ExternalEvent, result: PullResult):
        now = self.clock()

        if self.unmatched_policy == UnmatchedEventPolicy.PLACEHOLDER:
            await self.store.upsert_personal_block(PersonalBlock(
                connection_id=connection.id,
                external_event_id=remote.external_id,
                clinician_id=connection.clinician_id,
                start=remote.start,
                end=remote.end,
                display_title=self.config.placeholder_title,
                updated_at=now
            ))
            result.placeholders += 1

        elif self.unmatched_policy == UnmatchedEventPolicy.CREATE:
            appointment = await self.store.create_appointment(LocalEvent(
                id=str(uuid.uuid4()),
                clinician_id=connection.clinician_id,
                start=remote.start,
                end=remote.end,
                title=remote.title,
                notes=remote.description,
                status=AppointmentStatus.SCHEDULED,
                external_event_id=remote.external_id,
                last_synced_at=now,
                last_modified=remote.last_modified or now
            ))
            await self.store.upsert_sync_mapping(SyncMapping(
                local_event_id=appointment.id,
                external_event_id=remote.external_id,
                connection_id=connection.id,
                direction=SyncDirection.INBOUND,
                content_hash=remote.content_hash(),
                created_at=now,
                updated_at=now
            ))
            await self.store.log_sync_action(appointment.id, 'create', self.provider_name, 'local', 'success')
            result.created += 1

    async def _apply_remote(self, local: LocalEvent, remote: ExternalEvent, mapping: SyncMapping):
        """リモート優先: 予約へ書き戻す"""
        now = self.clock()
        await self.store.update_appointment(local.id, {
            'start': remote.start,
            'end': remote.end,
            'title': remote.title,
            'notes': remote.description,
            'last_synced_at': now,
        })
        await self._touch_mapping(mapping, remote.content_hash(), now)
        await self.store.log_sync_action(local.id, 'update', self.provider_name, 'local', 'success')

    async def _push_local_version(self, connection: Connection, local: LocalEvent, mapping: SyncMapping):
        """ローカル優先: 外部イベントを上書き"""
        await self.retry_policy.run(
            lambda: self.provider_client.update_event(
                connection.id, mapping.external_event_id, local, connection.timezone
            ),
            description=f"update_event({local.id})", sleep=self.sleep
        )
        now = self.clock()
        await self._touch_mapping(mapping, local.content_hash(), now)
        await self.store.update_appointment(local.id, {'last_synced_at': now})
        await self.store.log_sync_action(local.id, 'update', 'local', self.provider_name, 'success')

    async def _touch_mapping(self, mapping: SyncMapping, content_hash: str, now: Optional[datetime] = None):
        mapping.content_hash = content_hash
        mapping.updated_at = now or self.clock()
        if mapping.direction != SyncDirection.BIDIRECTIONAL:
            mapping.direction = SyncDirection.BIDIRECTIONAL
        await self.store.upsert_sync_mapping(mapping)

    async def _reconcile_missing(self, connection: Connection, mapping: SyncMapping,
                                 time_range: TimeRange, result: PullResult):
        """一覧に現れなかったマッピング済み予定の確認（削除検知）"""
        local = await self.store.get_appointment(mapping.local_event_id)
        if local is None or not TimeRepresentation.overlaps(local.time_range, time_range):
            return

        remote = await self.retry_policy.run(
            lambda: self.provider_client.get_event(connection.id, mapping.external_event_id, connection.timezone),
            description=f"get_event({mapping.external_event_id})", sleep=self.sleep
        )

        if remote is None:
            if local.status != AppointmentStatus.CANCELLED:
                await self.store.update_appointment(local.id, {
                    'status': AppointmentStatus.CANCELLED,
                    'external_event_id': None,
                    'last_synced_at': self.clock(),
                })
            await self.store.delete_sync_mapping(connection.id, mapping.external_event_id)
            await self.store.log_sync_action(local.id, 'delete', self.provider_name, 'local', 'success')
            logger.info(f"External event {mapping.external_event_id} deleted remotely; appointment {local.id} cancelled")
            result.deleted += 1
            return

        if not remote.is_busy:
            # 空き時間に変更された予定は取り込まない
            result.unchanged += 1
            return

        # 期間外へ移動された予定
        await self._pull_one(connection, remote, mapping, result)

    # ------------------------------------------------------------------ 双方向

    async def bidirectional_sync(self, connection_id: str, local_event_ids: Optional[Iterable[str]] = None,
                                 time_range: Optional[TimeRange] = None,
                                 mode: Optional[SyncMode] = None,
                                 cancel_event: Optional[asyncio.Event] = None) -> SyncPassResult:
        """プッシュ→プル（または片方のみ）を実行し、接続状態と最終同期時刻を更新"""
        mode = mode or self.mode
        if mode in (SyncMode.PULL, SyncMode.BIDIRECTIONAL) and time_range is None:
            raise ValueError("A time range is required to pull external events")

        connection = await self._active_connection(connection_id)
        started_at = self.clock()
        result = SyncPassResult(connection_id=connection_id)

        operation = self.audit_logger.log_operation_start(
            "bidirectional_sync", connection_id=connection_id, mode=mode.value
        )
        await self.store.update_connection_state(connection_id, SyncState.RUNNING)

        auth_failed = False
        try:
            if mode in (SyncMode.PUSH, SyncMode.BIDIRECTIONAL):
                if local_event_ids is None:
                    local_event_ids = await self._ids_in_range(connection, time_range)
                result.push = await self.push_batch(local_event_ids, connection_id, cancel_event)
                if result.push.aborted:
                    auth_failed = True
                    result.error = result.push.auth_error

            if mode in (SyncMode.PULL, SyncMode.BIDIRECTIONAL) and not auth_failed:
                if cancel_event is None or not cancel_event.is_set():
                    result.pull = await self.pull_range(connection_id, time_range)

        except ReauthorizationRequired as e:
            auth_failed = True
            result.error = self.error_handler.classify(e)
        except CalendarSyncError as e:
            result.error = self.error_handler.handle_error(e, {'connection_id': connection_id})
        except Exception as e:
            logger.error(f"Unexpected failure during sync of connection {connection_id}: {e!r}")
            result.error = self.error_handler.handle_error(e, {'connection_id': connection_id})

        if auth_failed:
            # 状態はpush_batch / pull_range側で error 済み
            result.sync_state = SyncState.ERROR
        elif result.error:
            result.sync_state = SyncState.ERROR
            await self.store.update_connection_state(connection_id, SyncState.ERROR, last_error=result.error.message)
            await self.notifier.notify(SyncEventType.SYNC_ERROR, result.to_dict(), connection_id)
        else:
            result.last_synced_at = await self.store.advance_last_synced_at(connection_id, started_at)
            result.sync_state = SyncState.STOPPED
            await self.store.update_connection_state(connection_id, SyncState.STOPPED,
                                                     last_error=self._partial_error_summary(result))
            await self.notifier.notify(SyncEventType.SYNC_COMPLETE, result.to_dict(), connection_id)

        self.audit_logger.log_operation_end(operation, success=result.error is None,
                                            sync_state=result.sync_state.value)
        return result

    async def _ids_in_range(self, connection: Connection, time_range: Optional[TimeRange]) -> List[str]:
        if time_range is None:
            return []
        appointments = await self.store.list_appointments_in_range(connection.clinician_id, time_range)
        return [a.id for a in appointments
                if a.is_push_eligible or (a.status == AppointmentStatus.CANCELLED and a.external_event_id)]

    @staticmethod
    def _partial_error_summary(result: SyncPassResult) -> Optional[str]:
        failed = (result.push.count(ItemStatus.FAILED) if result.push else 0) + \
                 (len(result.pull.errors) if result.pull else 0)
        return f"{failed} item(s) failed during the last sync" if failed else None

    # ------------------------------------------------------------------ 取り消し・問い合わせ

    async def undo_sync(self, local_event_id: str) -> bool:
        """外部イベントとマッピングを削除して同期を取り消す"""
        mapping = await self.store.find_sync_mapping_for_appointment(local_event_id)
        if mapping is None:
            return False

        connection = await self._active_connection(mapping.connection_id)
        try:
            await self.retry_policy.run(
                lambda: self.provider_client.delete_event(connection.id, mapping.external_event_id),
                description=f"delete_event({local_event_id})", sleep=self.sleep
            )
        except ReauthorizationRequired as e:
            await self._on_auth_failure(connection.id, e)
            raise

        await self.store.delete_sync_mapping(connection.id, mapping.external_event_id)
        await self.store.update_appointment(local_event_id, {'external_event_id': None, 'last_synced_at': None})
        await self.store.log_sync_action(local_event_id, 'undo', 'local', self.provider_name, 'success')

        logger.info(f"Sync undone for appointment {local_event_id}")
        return True

    async def get_sync_status(self, appointment_id: str) -> AppointmentSyncStatus:
        appointment = await self.store.get_appointment(appointment_id)
        if appointment is None:
            raise EventNotFound(f"Appointment {appointment_id} not found")

        mapping = await self.store.find_sync_mapping_for_appointment(appointment_id)
        external_id = mapping.external_event_id if mapping else appointment.external_event_id
        return AppointmentSyncStatus(
            appointment_id=appointment_id,
            is_synced=mapping is not None,
            external_event_id=external_id,
            last_synced_at=appointment.last_synced_at
        )

    async def get_connection_state(self, connection_id: str) -> ConnectionStateView:
        connection = await self.store.get_connection(connection_id)
        if connection is None:
            raise ConnectionInactive(f"Connection {connection_id} not found")

        record = await self.store.get_token_record(connection_id)
        requires_reauth = connection.is_active and (
            record is None or (record.refresh_token is None and record.is_expired(self.clock()))
        )

        return ConnectionStateView(
            connection_id=connection.id,
            is_active=connection.is_active,
            sync_state=connection.sync_state,
            account_email=connection.account_email,
            last_synced_at=connection.last_synced_at,
            last_error=connection.last_error,
            requires_reauthorization=requires_reauth
        )
