"""データモデル定義"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from .time_representation import TimeRange, to_storage


class SyncState(Enum):
    """接続の同期状態"""
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class AppointmentStatus(Enum):
    """予約ステータス"""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


PUSH_ELIGIBLE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class SyncDirection(Enum):
    """マッピングの同期方向"""
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    BIDIRECTIONAL = "bidirectional"


@dataclass
class Connection:
    """外部カレンダーアカウントとの認可済み接続"""
    id: str
    clinician_id: str
    provider: str
    account_email: Optional[str] = None
    is_active: bool = True
    scopes: List[str] = field(default_factory=list)
    timezone: str = "America/Chicago"
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_state: SyncState = SyncState.STOPPED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'clinician_id': self.clinician_id,
            'provider': self.provider,
            'account_email': self.account_email,
            'is_active': self.is_active,
            'scopes': list(self.scopes),
            'timezone': self.timezone,
            'last_synced_at': to_storage(self.last_synced_at),
            'last_error': self.last_error,
            'sync_state': self.sync_state.value,
        }


@dataclass
class TokenRecord:
    """接続ごとのOAuthトークン"""
    connection_id: str
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def needs_refresh(self, now: datetime, skew: timedelta) -> bool:
        return now >= self.expires_at - skew


@dataclass
class LocalEvent:
    """内部予約（外部の予約管理が所有）"""
    id: str
    clinician_id: str
    start: datetime
    end: datetime
    title: str
    notes: str = ""
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    external_event_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    @property
    def is_push_eligible(self) -> bool:
        return self.status in PUSH_ELIGIBLE_STATUSES

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    def content_hash(self) -> str:
        return content_hash(self.title, self.notes, self.start, self.end)


@dataclass
class ExternalEvent:
    """プロバイダーから取得したイベント"""
    external_id: str
    start: datetime
    end: datetime
    title: str = ""
    description: str = ""
    last_modified: Optional[datetime] = None
    is_busy: bool = True
    all_day: bool = False
    source_appointment_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(self.start, self.end)

    def content_hash(self) -> str:
        return content_hash(self.title, self.description, self.start, self.end)


@dataclass
class SyncMapping:
    """LocalEvent ⇔ ExternalEvent の永続リンク"""
    local_event_id: str
    external_event_id: str
    connection_id: str
    direction: SyncDirection
    content_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PersonalBlock:
    """未対応の外部予定のプレースホルダー（タイトル等は表示しない）"""
    connection_id: str
    external_event_id: str
    clinician_id: str
    start: datetime
    end: datetime
    display_title: str = "Personal Block"
    updated_at: Optional[datetime] = None


@dataclass
class OAuthState:
    """認可フロー中の一時状態"""
    state: str
    clinician_id: str
    provider: str
    code_verifier: str
    redirect_uri: str
    timezone: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def content_hash(title: str, description: str, start: datetime, end: datetime) -> str:
    """同期ペイロードのハッシュ（双方で同じ正規形を使う）"""
    payload = {
        'title': (title or '').strip(),
        'description': (description or '').strip(),
        'start': to_storage(start),
        'end': to_storage(end),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode('utf-8')
    return hashlib.sha256(encoded).hexdigest()
