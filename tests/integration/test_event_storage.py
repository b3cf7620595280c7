"""
ローカルストア（SQLite参照実装）の統合テスト
"""

import asyncio
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from clinic_calendar_sync.core.models import (
    AppointmentStatus, Connection, OAuthState, PersonalBlock, SyncDirection, SyncMapping, SyncState
)
from clinic_calendar_sync.core.time_representation import TimeRange
from clinic_calendar_sync.layers.sync_layer.event_storage import EventStorage

from conftest import make_appointment

T0 = datetime(2025, 3, 3, 15, 0, tzinfo=timezone.utc)


def _mapping(local_id, external_id, connection_id="conn-1", **kwargs):
    return SyncMapping(local_event_id=local_id, external_event_id=external_id, connection_id=connection_id,
                       direction=kwargs.pop('direction', SyncDirection.OUTBOUND), **kwargs)


class TestSchema:
    """スキーマはマイグレーションでのみ作成される"""

    @pytest.mark.asyncio
    async def test_operations_fail_without_migration(self, tmp_path):
        store = EventStorage(tmp_path / "unmigrated.db")

        with pytest.raises(aiosqlite.OperationalError):
            await store.get_appointment("appt-1")

    @pytest.mark.asyncio
    async def test_apply_schema_is_repeatable(self, storage):
        await storage.apply_schema()
        assert (await storage.get_storage_statistics())['total_appointments'] == 0


class TestAppointments:
    """予約の読み書き"""

    @pytest.mark.asyncio
    async def test_range_query_is_half_open(self, storage):
        await storage.create_appointment(make_appointment("a", T0))
        await storage.create_appointment(make_appointment("b", T0 + timedelta(hours=1)))
        await storage.create_appointment(make_appointment("c", T0, clinician_id="clin-2"))

        found = await storage.list_appointments_in_range(
            "clin-1", TimeRange(T0 + timedelta(minutes=30), T0 + timedelta(hours=1))
        )

        assert [a.id for a in found] == ["a"]

    @pytest.mark.asyncio
    async def test_round_trip_preserves_instants(self, storage):
        start = datetime(2025, 3, 9, 1, 30, tzinfo=timezone(timedelta(hours=-6)))
        await storage.create_appointment(make_appointment("a", start, status=AppointmentStatus.CONFIRMED))

        stored = await storage.get_appointment("a")

        assert stored.start == start
        assert stored.start.tzinfo == timezone.utc
        assert stored.status == AppointmentStatus.CONFIRMED
        assert stored.last_modified is not None

    @pytest.mark.asyncio
    async def test_update_only_whitelisted_fields(self, storage):
        await storage.create_appointment(make_appointment("a", T0))

        assert await storage.update_appointment("a", {'status': AppointmentStatus.CANCELLED,
                                                      'external_event_id': 'evt-1'})
        stored = await storage.get_appointment("a")
        assert stored.status == AppointmentStatus.CANCELLED
        assert stored.external_event_id == 'evt-1'

        with pytest.raises(ValueError):
            await storage.update_appointment("a", {'clinician_id': 'clin-2'})
        assert not await storage.update_appointment("missing", {'title': 'x'})


class TestConnections:
    """接続と同期状態"""

    @pytest.mark.asyncio
    async def test_one_active_connection_per_owner(self, storage):
        await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))
        await storage.upsert_connection(Connection(id="c0", clinician_id="clin-1", provider="google",
                                                   is_active=False))

        with pytest.raises(aiosqlite.IntegrityError):
            await storage.upsert_connection(Connection(id="c2", clinician_id="clin-1", provider="google"))

        assert (await storage.find_connection("clin-1", "google")).id == "c1"

    @pytest.mark.asyncio
    async def test_last_synced_at_never_regresses(self, storage, clock):
        await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))

        later = await storage.advance_last_synced_at("c1", T0 + timedelta(minutes=5))
        earlier = await storage.advance_last_synced_at("c1", T0)

        assert later == earlier == T0 + timedelta(minutes=5)
        assert (await storage.get_connection("c1")).last_synced_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_concurrent_advances_keep_maximum(self, storage):
        await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))
        instants = [T0 + timedelta(seconds=s) for s in (30, 5, 50, 10, 45)]

        await asyncio.gather(*(storage.advance_last_synced_at("c1", instant) for instant in instants))

        assert (await storage.get_connection("c1")).last_synced_at == T0 + timedelta(seconds=50)

    @pytest.mark.asyncio
    async def test_upsert_does_not_touch_last_synced_at(self, storage):
        connection = await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))
        await storage.advance_last_synced_at("c1", T0)

        connection.last_synced_at = None
        connection.account_email = "new@example.com"
        await storage.upsert_connection(connection)

        stored = await storage.get_connection("c1")
        assert stored.last_synced_at == T0
        assert stored.account_email == "new@example.com"

    @pytest.mark.asyncio
    async def test_connection_state(self, storage):
        await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))

        await storage.update_connection_state("c1", SyncState.ERROR, last_error="Reauthorization required")

        stored = await storage.get_connection("c1")
        assert stored.sync_state == SyncState.ERROR
        assert stored.last_error == "Reauthorization required"


class TestSyncMappings:
    """同期マッピング"""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent_on_external_id(self, storage):
        await storage.upsert_sync_mapping(_mapping("a", "evt-1", content_hash="h1"))
        await storage.upsert_sync_mapping(_mapping("a", "evt-1", content_hash="h2"))

        mappings = await storage.list_sync_mappings("conn-1")
        assert len(mappings) == 1
        assert mappings[0].content_hash == "h2"

    @pytest.mark.asyncio
    async def test_relinking_local_event_replaces_old_mapping(self, storage):
        await storage.upsert_sync_mapping(_mapping("a", "evt-1"))
        await storage.upsert_sync_mapping(_mapping("a", "evt-2"))

        mappings = await storage.list_sync_mappings("conn-1")
        assert [m.external_event_id for m in mappings] == ["evt-2"]
        assert (await storage.get_sync_mapping_by_local("conn-1", "a")).external_event_id == "evt-2"

    @pytest.mark.asyncio
    async def test_find_mapping_prefers_active_connection(self, storage):
        await storage.upsert_connection(Connection(id="old", clinician_id="clin-1", provider="google",
                                                   is_active=False))
        await storage.upsert_connection(Connection(id="new", clinician_id="clin-1", provider="google"))
        await storage.upsert_sync_mapping(_mapping("a", "evt-old", connection_id="old"))
        await storage.upsert_sync_mapping(_mapping("a", "evt-new", connection_id="new"))

        found = await storage.find_sync_mapping_for_appointment("a")
        assert found.connection_id == "new"

        await storage.delete_sync_mapping("new", "evt-new")
        assert (await storage.find_sync_mapping_for_appointment("a")).connection_id == "old"


class TestOAuthStates:
    """OAuth一時状態"""

    def _state(self, clock, value="state-1"):
        return OAuthState(state=value, clinician_id="clin-1", provider="google", code_verifier="verifier-abc",
                          redirect_uri="https://clinic.test/cb", timezone="America/Chicago",
                          expires_at=clock() + timedelta(minutes=10))

    @pytest.mark.asyncio
    async def test_pop_is_single_use(self, storage, clock):
        await storage.save_oauth_state(self._state(clock))

        first = await storage.pop_oauth_state("state-1")
        second = await storage.pop_oauth_state("state-1")

        assert first.code_verifier == "verifier-abc"
        assert first.expires_at == clock() + timedelta(minutes=10)
        assert second is None

    @pytest.mark.asyncio
    async def test_concurrent_pops_hand_out_state_once(self, storage, clock):
        await storage.save_oauth_state(self._state(clock))

        results = await asyncio.gather(*(storage.pop_oauth_state("state-1") for _ in range(4)))

        assert sum(1 for result in results if result is not None) == 1

    @pytest.mark.asyncio
    async def test_verifier_is_encrypted_at_rest(self, storage, clock):
        await storage.save_oauth_state(self._state(clock))

        async with aiosqlite.connect(storage.database_path) as db:
            cursor = await db.execute("SELECT code_verifier FROM oauth_states")
            (stored,) = await cursor.fetchone()

        assert "verifier-abc" not in stored


class TestHousekeeping:
    """プレースホルダー・同期ログ・統計"""

    @pytest.mark.asyncio
    async def test_personal_blocks_upsert(self, storage):
        block = PersonalBlock(connection_id="conn-1", external_event_id="evt-1", clinician_id="clin-1",
                              start=T0, end=T0 + timedelta(hours=1))
        await storage.upsert_personal_block(block)
        block.end = T0 + timedelta(hours=2)
        await storage.upsert_personal_block(block)

        blocks = await storage.list_personal_blocks("clin-1", TimeRange(T0, T0 + timedelta(days=1)))

        assert len(blocks) == 1
        assert blocks[0].end == T0 + timedelta(hours=2)
        assert blocks[0].display_title == "Personal Block"

    @pytest.mark.asyncio
    async def test_personal_block_delete(self, storage):
        window = TimeRange(T0, T0 + timedelta(days=1))
        for event_id in ("evt-1", "evt-2"):
            await storage.upsert_personal_block(PersonalBlock(
                connection_id="conn-1", external_event_id=event_id, clinician_id="clin-1",
                start=T0, end=T0 + timedelta(hours=1)
            ))

        await storage.delete_personal_block("conn-1", "evt-1")
        await storage.delete_personal_block("conn-1", "evt-missing")

        assert [b.external_event_id for b in await storage.list_personal_blocks("clin-1", window)] == ["evt-2"]

    @pytest.mark.asyncio
    async def test_sync_logs_and_cleanup(self, storage, clock):
        await storage.log_sync_action("a", "create", "local", "google", "success")
        clock.advance(days=45)
        await storage.log_sync_action("a", "update", "local", "google", "failed", "HTTP 400")
        await storage.save_oauth_state(OAuthState(
            state="stale", clinician_id="clin-1", provider="google", code_verifier="v",
            redirect_uri="https://clinic.test/cb", timezone="UTC", expires_at=clock() - timedelta(minutes=1)
        ))

        await storage.cleanup_old_data(retention_days=30)

        logs = await storage.get_sync_logs("a")
        assert [log['action'] for log in logs] == ["update"]
        assert logs[0]['error_message'] == "HTTP 400"
        assert await storage.pop_oauth_state("stale") is None

    @pytest.mark.asyncio
    async def test_statistics(self, storage):
        await storage.create_appointment(make_appointment("a", T0, external_event_id="evt-1"))
        await storage.create_appointment(make_appointment("b", T0))
        await storage.upsert_connection(Connection(id="c1", clinician_id="clin-1", provider="google"))

        stats = await storage.get_storage_statistics()

        assert stats['total_appointments'] == 2
        assert stats['synced_appointments'] == 1
        assert stats['active_connections'] == 1
        assert stats['database_size_mb'] > 0
