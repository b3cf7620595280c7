"""
プロバイダークライアント - 外部カレンダーREST API（イベント一覧・作成・更新・削除）
Google Calendar API v3 互換のワイヤ形式
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from ...config.enhanced_config import ProviderConfig
from ...core.exceptions import (
    CalendarSyncError, EventNotFound, InvalidZone, MalformedEvent, ProviderRateLimited, ProviderRejected,
    ProviderUnavailable, ReauthorizationRequired
)
from ...core.models import ExternalEvent, LocalEvent
from ...core.time_representation import TimeRange, TimeRepresentation, parse_iso8601
from ..auth_layer.token_vault import TokenVault

logger = logging.getLogger(__name__)

SYNC_SOURCE = "clinic_calendar_sync"
RATE_LIMIT_REASONS = frozenset({'rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded'})


@dataclass
class EventListing:
    """一覧取得結果（上限到達時は truncated、解釈できなかった予定は rejected）"""
    events: List[ExternalEvent] = field(default_factory=list)
    rejected: List[Tuple[Optional[str], CalendarSyncError]] = field(default_factory=list)
    truncated: bool = False
    pages: int = 0
    skipped_free: int = 0

    def __iter__(self) -> Iterator[ExternalEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)


@dataclass
class _Response:
    status: int
    body: str
    headers: Dict[str, str]

    def json(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.body) if self.body else {}
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


class ProviderClient:
    """外部カレンダーAPIの薄いクライアント

    すべての呼び出しはTokenVaultからトークンを取得し、
    401を受けた場合に限り一度だけ強制リフレッシュして再試行する。
    """

    def __init__(self, token_vault: TokenVault, session: aiohttp.ClientSession,
                 config: Optional[ProviderConfig] = None):
        self.token_vault = token_vault
        self.session = session
        self.config = config or ProviderConfig()
        self.timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
        self.request_count = 0

    @property
    def _events_url(self) -> str:
        return f"{self.config.api_base_url}/calendars/{quote(self.config.calendar_id, safe='')}/events"

    async def list_busy_events(self, connection_id: str, time_range: TimeRange,
                               default_zone: str = "America/Chicago") -> EventListing:
        """期間内の予定を全ページ取得し、空き時間（transparent）を除外して返す"""
        listing = EventListing()
        params: Dict[str, Any] = {
            'timeMin': _to_wire_instant(time_range.start),
            'timeMax': _to_wire_instant(time_range.end),
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': self.config.page_size,
        }

        while True:
            response = await self._request(connection_id, 'GET', self._events_url, params=params)
            payload = response.json()
            listing.pages += 1

            items = payload.get('items', [])
            for item in items:
                if len(listing.events) >= self.config.max_events:
                    listing.truncated = True
                    break
                if isinstance(item, dict) and item.get('transparency') == 'transparent':
                    listing.skipped_free += 1
                    continue
                try:
                    event = self._parse_event(item, default_zone)
                except (MalformedEvent, InvalidZone) as e:
                    external_id = item.get('id') if isinstance(item, dict) else None
                    logger.warning(f"Skipping provider event {external_id}: {e.message}")
                    listing.rejected.append((external_id, e))
                    continue
                if event:
                    listing.events.append(event)

            next_token = payload.get('nextPageToken')
            if listing.truncated or not next_token:
                break
            if len(listing.events) >= self.config.max_events:
                # 上限ちょうどで次ページが残っている
                listing.truncated = True
                break

            params['pageToken'] = next_token

        if listing.truncated:
            logger.warning(
                f"Event listing for connection {connection_id} hit the cap of "
                f"{self.config.max_events} events; remaining pages were not fetched"
            )

        logger.info(
            f"Listed {len(listing.events)} busy events for connection {connection_id} "
            f"({listing.pages} page(s), {listing.skipped_free} free skipped, {len(listing.rejected)} unreadable)"
        )
        return listing

    async def get_event(self, connection_id: str, external_id: str,
                        default_zone: str = "America/Chicago") -> Optional[ExternalEvent]:
        """単一イベント取得（削除済み・キャンセル済みはNone、空き時間はis_busy=Falseで返す）

        解釈できない予定は MalformedEvent / InvalidZone を送出する（Noneにはしない）。
        """
        try:
            response = await self._request(connection_id, 'GET', f"{self._events_url}/{quote(external_id, safe='')}")
        except EventNotFound:
            return None
        return self._parse_event(response.json(), default_zone)

    async def create_event(self, connection_id: str, local_event: LocalEvent, zone_id: str) -> str:
        """外部イベント作成 → 外部ID"""
        body = self._build_event_body(local_event, zone_id)
        response = await self._request(connection_id, 'POST', self._events_url, json_body=body)
        external_id = response.json().get('id')
        if not external_id:
            raise ProviderRejected("Provider accepted the event but returned no identifier", status=response.status)

        logger.info(f"Created external event {external_id} for appointment {local_event.id}")
        return external_id

    async def update_event(self, connection_id: str, external_id: str, local_event: LocalEvent, zone_id: str):
        """外部イベント更新（存在しない場合はEventNotFound）"""
        body = self._build_event_body(local_event, zone_id)
        await self._request(connection_id, 'PUT', f"{self._events_url}/{quote(external_id, safe='')}",
                            json_body=body)
        logger.info(f"Updated external event {external_id} for appointment {local_event.id}")

    async def delete_event(self, connection_id: str, external_id: str) -> bool:
        """外部イベント削除（既に存在しない場合はFalse）"""
        try:
            await self._request(connection_id, 'DELETE', f"{self._events_url}/{quote(external_id, safe='')}")
        except EventNotFound:
            logger.info(f"External event {external_id} already deleted")
            return False

        logger.info(f"Deleted external event {external_id}")
        return True

    async def _request(self, connection_id: str, method: str, url: str,
                       params: Optional[Dict[str, Any]] = None,
                       json_body: Optional[Dict[str, Any]] = None) -> _Response:
        token = await self.token_vault.get_valid_access_token(connection_id)
        response = await self._send(method, url, token, params, json_body)

        if response.status == 401:
            logger.info(f"Provider rejected token for connection {connection_id}, forcing one refresh")
            token = await self.token_vault.force_refresh(connection_id, token)
            response = await self._send(method, url, token, params, json_body)
            if response.status == 401:
                raise ReauthorizationRequired(connection_id, "provider rejected a freshly refreshed token")

        self._raise_for_status(response, method, url)
        return response

    async def _send(self, method: str, url: str, token: str,
                    params: Optional[Dict[str, Any]], json_body: Optional[Dict[str, Any]]) -> _Response:
        headers = {'Authorization': f"Bearer {token}", 'Accept': 'application/json'}
        self.request_count += 1

        try:
            async with self.session.request(method, url, headers=headers, params=params, json=json_body,
                                            timeout=self.timeout) as response:
                body = await response.text()
                return _Response(status=response.status, body=body, headers=dict(response.headers))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailable(f"{method} {url} failed: {e.__class__.__name__}: {e}") from e

    def _raise_for_status(self, response: _Response, method: str, url: str):
        status = response.status
        if status < 400:
            return

        payload = response.json()
        error = payload.get('error') if isinstance(payload.get('error'), dict) else {}
        message = error.get('message') or response.body[:200] or f"HTTP {status}"
        reasons = {item.get('reason') for item in error.get('errors', []) if isinstance(item, dict)}

        if status == 429 or (status == 403 and reasons & RATE_LIMIT_REASONS):
            retry_after = response.headers.get('Retry-After')
            raise ProviderRateLimited(
                f"{method} rate limited by provider: {message}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                details={'status': status}
            )
        if status in (404, 410):
            raise EventNotFound(f"{method} {url}: event not found ({status})", details={'status': status})
        if status >= 500:
            raise ProviderUnavailable(f"{method} failed with provider error {status}: {message}",
                                      details={'status': status})
        raise ProviderRejected(f"{method} rejected by provider ({status}): {message}",
                               status=status, details={'status': status, 'reasons': sorted(r for r in reasons if r)})

    def _parse_event(self, item: Any, default_zone: str) -> Optional[ExternalEvent]:
        """プロバイダーのイベントをExternalEventに変換

        Noneはキャンセル済みの予定のみ。形式不正はMalformedEvent、
        不明なtimeZoneはInvalidZone。
        """
        if not isinstance(item, dict):
            raise MalformedEvent(None, f"expected an event object, got {type(item).__name__}")
        if item.get('status') == 'cancelled':
            return None

        external_id = item.get('id')
        try:
            start_field = item.get('start') or {}
            end_field = item.get('end') or {}

            if start_field.get('date'):
                zone_id = start_field.get('timeZone') or default_zone
                end_date = date.fromisoformat(end_field['date']) if end_field.get('date') else None
                time_range = TimeRepresentation.all_day_range(
                    date.fromisoformat(start_field['date']), end_date, zone_id
                )
                start, end, all_day = time_range.start, time_range.end, True
            else:
                start, _ = TimeRepresentation.parse_provider_time(start_field, default_zone)
                end, _ = TimeRepresentation.parse_provider_time(end_field, default_zone)
                all_day = False

            updated = item.get('updated')
            private = (item.get('extendedProperties') or {}).get('private') or {}

            return ExternalEvent(
                external_id=item['id'],
                start=start,
                end=end,
                title=item.get('summary', ''),
                description=item.get('description', ''),
                last_modified=parse_iso8601(updated).astimezone(timezone.utc) if updated else None,
                is_busy=item.get('transparency') != 'transparent',
                all_day=all_day,
                source_appointment_id=private.get('clinic_appointment_id'),
                raw=item
            )

        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise MalformedEvent(external_id, f"{type(e).__name__}: {e}") from e

    def _build_event_body(self, local_event: LocalEvent, zone_id: str) -> Dict[str, Any]:
        return {
            'summary': local_event.title,
            'description': local_event.notes or '',
            'start': TimeRepresentation.to_provider_time(local_event.start, zone_id),
            'end': TimeRepresentation.to_provider_time(local_event.end, zone_id),
            'extendedProperties': {
                'private': {
                    'clinic_appointment_id': local_event.id,
                    'sync_source': SYNC_SOURCE,
                }
            },
        }


def _to_wire_instant(instant) -> str:
    return instant.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')
