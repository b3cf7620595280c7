"""
テスト共通フィクスチャ
aiohttp互換の偽セッションとGoogle Calendar API互換の偽プロバイダー
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote

import pytest
from cryptography.fernet import Fernet

from clinic_calendar_sync.config.enhanced_config import (
    OAuthConfig, ProviderConfig, SecurityManager, SyncLayerConfig
)
from clinic_calendar_sync.core.models import AppointmentStatus, Connection, LocalEvent, TokenRecord
from clinic_calendar_sync.core.time_representation import parse_iso8601
from clinic_calendar_sync.layers.auth_layer.token_vault import TokenVault
from clinic_calendar_sync.layers.notification_layer.sync_notifier import SyncNotifier
from clinic_calendar_sync.layers.provider_layer.provider_client import ProviderClient
from clinic_calendar_sync.layers.sync_layer.event_storage import EventStorage
from clinic_calendar_sync.layers.sync_layer.sync_orchestrator import SyncOrchestrator

API_BASE = "https://calendar.test/v3"
EVENTS_URL = f"{API_BASE}/calendars/primary/events"


class FakeClock:
    """注入用の時計"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 3, 1, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeResponse:
    """aiohttp.ClientResponse の代用"""

    def __init__(self, status: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None,
                 body: Optional[str] = None):
        self.status = status
        self.headers = headers or {}
        self._body = body if body is not None else (json.dumps(payload) if payload is not None else "")

    async def text(self) -> str:
        return self._body


class _RequestContext:
    def __init__(self, session: 'FakeSession', method: str, url: str, kwargs: Dict[str, Any]):
        self.session = session
        self.method = method
        self.url = url
        self.kwargs = kwargs

    async def __aenter__(self) -> FakeResponse:
        return self.session.handler(self.method, self.url, self.kwargs)

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """aiohttp.ClientSession の代用（呼び出しを記録する）"""

    def __init__(self, handler: Callable[[str, str, Dict[str, Any]], FakeResponse]):
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs) -> _RequestContext:
        self.calls.append({'method': method, 'url': url, **kwargs})
        return _RequestContext(self, method, url, kwargs)

    def post(self, url: str, **kwargs) -> _RequestContext:
        return self.request('POST', url, **kwargs)

    def get(self, url: str, **kwargs) -> _RequestContext:
        return self.request('GET', url, **kwargs)

    def calls_to(self, url_prefix: str, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [call for call in self.calls
                if call['url'].startswith(url_prefix) and (method is None or call['method'] == method)]


class FakeCalendarProvider:
    """Google Calendar API v3 とOAuthエンドポイントの簡易シミュレーター"""

    def __init__(self, clock: FakeClock, oauth: OAuthConfig):
        self.clock = clock
        self.oauth = oauth
        self.events: Dict[str, Dict[str, Any]] = {}
        self.valid_access_tokens = set()
        self.valid_refresh_tokens = set()
        self.valid_codes: Dict[str, Dict[str, Any]] = {}
        self.email = "clinician@example.com"
        self.page_size_override: Optional[int] = None
        self.faults: Dict[str, List[Any]] = {}
        self._sequence = 0
        self.refresh_grants = 0

    # -- テストから使う操作

    def next_id(self, prefix: str) -> str:
        self._sequence += 1
        return f"{prefix}-{self._sequence}"

    def issue_access_token(self) -> str:
        token = self.next_id("access")
        self.valid_access_tokens.add(token)
        return token

    def add_event(self, summary: str, start: str, end: str, transparency: Optional[str] = None,
                  updated: Optional[datetime] = None, description: str = "", event_id: Optional[str] = None,
                  all_day: bool = False, time_zone: Optional[str] = None, **extra) -> str:
        event_id = event_id or self.next_id("evt")
        if all_day:
            start_field, end_field = {'date': start}, {'date': end}
        else:
            start_field, end_field = {'dateTime': start}, {'dateTime': end}
        if time_zone:
            start_field['timeZone'] = time_zone
            end_field['timeZone'] = time_zone
        event = {
            'id': event_id,
            'summary': summary,
            'description': description,
            'start': start_field,
            'end': end_field,
            'updated': _iso(updated or self.clock()),
            **extra,
        }
        if transparency:
            event['transparency'] = transparency
        self.events[event_id] = event
        return event_id

    def fail_next(self, key: str, *responses: Any):
        """key: 'GET' / 'POST' / 'PUT' / 'DELETE' / 'token'。値はステータスコードか例外"""
        self.faults.setdefault(key, []).extend(responses)

    # -- ルーティング

    def __call__(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        if url == self.oauth.token_endpoint:
            return self._fault_or('token', lambda: self._token_endpoint(kwargs.get('data') or {}))
        if url == self.oauth.userinfo_endpoint:
            return FakeResponse(200, {'email': self.email})
        if url == self.oauth.revocation_endpoint:
            return FakeResponse(200, {})
        if url.startswith(EVENTS_URL):
            return self._fault_or(method, lambda: self._events_endpoint(method, url, kwargs))
        return FakeResponse(404, {'error': {'message': 'unknown url'}})

    def _fault_or(self, key: str, handler: Callable[[], FakeResponse]) -> FakeResponse:
        queued = self.faults.get(key)
        if queued:
            fault = queued.pop(0)
            if isinstance(fault, BaseException):
                raise fault
            if isinstance(fault, FakeResponse):
                return fault
            return FakeResponse(fault, {'error': {'code': fault, 'message': f'injected {fault}'}})
        return handler()

    def _token_endpoint(self, data: Dict[str, Any]) -> FakeResponse:
        grant_type = data.get('grant_type')
        if grant_type == 'refresh_token':
            if data.get('refresh_token') not in self.valid_refresh_tokens:
                return FakeResponse(400, {'error': 'invalid_grant', 'error_description': 'Token has been revoked.'})
            self.refresh_grants += 1
            return FakeResponse(200, {
                'access_token': self.issue_access_token(), 'expires_in': 3600, 'token_type': 'Bearer'
            })

        if grant_type == 'authorization_code':
            grant = self.valid_codes.pop(data.get('code'), None)
            if grant is None or grant.get('code_verifier') not in (None, data.get('code_verifier')):
                return FakeResponse(400, {'error': 'invalid_grant'})
            refresh_token = self.next_id("refresh")
            self.valid_refresh_tokens.add(refresh_token)
            return FakeResponse(200, {
                'access_token': self.issue_access_token(), 'refresh_token': refresh_token,
                'expires_in': 3600, 'token_type': 'Bearer',
                'scope': 'https://www.googleapis.com/auth/calendar.events openid email',
            })

        return FakeResponse(400, {'error': 'unsupported_grant_type'})

    def _events_endpoint(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        token = (kwargs.get('headers') or {}).get('Authorization', '').replace('Bearer ', '')
        if token not in self.valid_access_tokens:
            return FakeResponse(401, {'error': {'code': 401, 'message': 'Invalid Credentials'}})

        event_id = unquote(url[len(EVENTS_URL) + 1:]) if len(url) > len(EVENTS_URL) else None

        if method == 'GET' and event_id is None:
            return self._list(kwargs.get('params') or {})
        if method == 'POST' and event_id is None:
            body = dict(kwargs.get('json') or {})
            body['id'] = self.next_id("evt")
            body['updated'] = _iso(self.clock())
            self.events[body['id']] = body
            return FakeResponse(200, body)

        if event_id not in self.events:
            return FakeResponse(404, {'error': {'code': 404, 'message': 'Not Found'}})

        if method == 'GET':
            return FakeResponse(200, self.events[event_id])
        if method == 'PUT':
            body = dict(kwargs.get('json') or {})
            body['id'] = event_id
            body['updated'] = _iso(self.clock())
            self.events[event_id] = body
            return FakeResponse(200, body)
        if method == 'DELETE':
            del self.events[event_id]
            return FakeResponse(204, body="")

        return FakeResponse(405, {'error': {'message': 'method not allowed'}})

    def _list(self, params: Dict[str, Any]) -> FakeResponse:
        page_size = self.page_size_override or int(params.get('maxResults', 250))
        offset = int(params.get('pageToken', 0))
        items = [event for event in self.events.values() if self._in_window(event, params)]
        items.sort(key=lambda e: _time_field(e, 'start').get('dateTime') or _time_field(e, 'start').get('date') or '')
        page = items[offset:offset + page_size]
        payload: Dict[str, Any] = {'items': page}
        if offset + page_size < len(items):
            payload['nextPageToken'] = str(offset + page_size)
        return FakeResponse(200, payload)

    @staticmethod
    def _in_window(event: Dict[str, Any], params: Dict[str, Any]) -> bool:
        # 終日イベント・オフセットなしの時刻は常に含める
        start, end = _time_field(event, 'start').get('dateTime'), _time_field(event, 'end').get('dateTime')
        if not (start and end and params.get('timeMin') and params.get('timeMax')):
            return True
        start, end = parse_iso8601(start), parse_iso8601(end)
        if start.tzinfo is None or end.tzinfo is None:
            return True
        return start < parse_iso8601(params['timeMax']) and end > parse_iso8601(params['timeMin'])


def _iso(instant: datetime) -> str:
    return instant.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def _time_field(event: Dict[str, Any], key: str) -> Dict[str, Any]:
    """形式不正なイベントもそのまま一覧に返す"""
    value = event.get(key)
    return value if isinstance(value, dict) else {}


class RecordingObserver:
    """受け取った通知を記録する観測者"""

    name = "recorder"

    def __init__(self):
        self.notifications = []

    async def on_sync_event(self, notification):
        self.notifications.append(notification)

    def types(self) -> List[str]:
        return [n.type.value for n in self.notifications]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        authorization_endpoint="https://auth.test/authorize",
        token_endpoint="https://auth.test/token",
        userinfo_endpoint="https://auth.test/userinfo",
        revocation_endpoint="https://auth.test/revoke",
        redirect_uri="https://clinic.test/oauth/callback",
        client_id="client-123",
        client_secret="secret-456",
    )


@pytest.fixture
def provider_config():
    return ProviderConfig(api_base_url=API_BASE, page_size=250, max_events=5000)


@pytest.fixture
def sync_config():
    return SyncLayerConfig(inter_batch_delay_seconds=1.0)


@pytest.fixture
def calendar(clock, oauth_config):
    return FakeCalendarProvider(clock, oauth_config)


@pytest.fixture
def session(calendar):
    return FakeSession(calendar)


@pytest.fixture
async def storage(tmp_path, clock):
    store = EventStorage(tmp_path / "calendar_sync.db",
                         security_manager=SecurityManager(Fernet.generate_key().decode()),
                         clock=clock)
    await store.apply_schema()
    return store


@pytest.fixture
def vault(storage, session, oauth_config, clock):
    return TokenVault(storage, session, oauth_config, clock=clock)


@pytest.fixture
def provider_client(vault, session, provider_config):
    return ProviderClient(vault, session, provider_config)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def notifier(observer):
    notifier = SyncNotifier()
    notifier.register_observer(observer)
    return notifier


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(storage, provider_client, notifier, sync_config, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return SyncOrchestrator(storage, provider_client, notifier=notifier, config=sync_config,
                            clock=clock, sleep=fake_sleep)


@pytest.fixture
async def connection(storage, calendar, clock):
    """有効なトークンを持つ接続"""
    conn = await storage.upsert_connection(Connection(
        id="conn-1", clinician_id="clin-1", provider="google",
        account_email="clinician@example.com", timezone="America/Chicago",
        scopes=["https://www.googleapis.com/auth/calendar.events"]
    ))
    refresh_token = calendar.next_id("refresh")
    calendar.valid_refresh_tokens.add(refresh_token)
    await storage.save_token_record(TokenRecord(
        connection_id=conn.id,
        access_token=calendar.issue_access_token(),
        refresh_token=refresh_token,
        expires_at=clock() + timedelta(hours=1)
    ))
    return conn


def make_appointment(appointment_id: str, start: datetime, minutes: int = 60, **kwargs) -> LocalEvent:
    return LocalEvent(
        id=appointment_id,
        clinician_id=kwargs.pop('clinician_id', 'clin-1'),
        start=start,
        end=start + timedelta(minutes=minutes),
        title=kwargs.pop('title', f"Session {appointment_id}"),
        notes=kwargs.pop('notes', ''),
        status=kwargs.pop('status', AppointmentStatus.SCHEDULED),
        **kwargs
    )
