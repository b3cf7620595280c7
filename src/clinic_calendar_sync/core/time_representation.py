"""
時刻表現サービス
保存・比較は常に絶対時刻（UTC）、ゾーン付き壁時計はプロバイダー/表示との境界のみで扱う
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import InvalidZone

STORAGE_TIMESPEC = "microseconds"


@dataclass(frozen=True)
class TimeRange:
    """半開区間 [start, end)"""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeRange requires timezone-aware instants")
        if self.end < self.start:
            raise ValueError(f"TimeRange end {self.end} precedes start {self.start}")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class TimeRepresentation:
    """絶対時刻 ⇔ ゾーン付き壁時計の変換"""

    @staticmethod
    def zone(zone_id: Optional[str]) -> ZoneInfo:
        """IANAゾーン取得。不明なIDは既定値に逃がさずInvalidZone"""
        if not zone_id or not isinstance(zone_id, str) or not zone_id.strip():
            raise InvalidZone(zone_id)
        try:
            return ZoneInfo(zone_id.strip())
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise InvalidZone(zone_id) from e

    @classmethod
    def to_absolute(cls, wall_clock: datetime, zone_id: str) -> datetime:
        """壁時計（naive）→ UTC絶対時刻

        繰り返される時間帯は ``fold`` で区別する。夏時間開始で存在しない時刻は
        PEP 495 の fold=0 規則（遷移前のオフセット）で解釈される。
        """
        zone = cls.zone(zone_id)
        if wall_clock.tzinfo is not None:
            wall_clock = wall_clock.replace(tzinfo=None)
        return wall_clock.replace(tzinfo=zone).astimezone(timezone.utc)

    @classmethod
    def to_local(cls, instant: datetime, zone_id: str) -> datetime:
        """UTC絶対時刻 → 壁時計（naive、fold保持）"""
        zone = cls.zone(zone_id)
        cls._require_aware(instant)
        return instant.astimezone(zone).replace(tzinfo=None)

    @staticmethod
    def overlaps(range_a: TimeRange, range_b: TimeRange) -> bool:
        return range_a.start < range_b.end and range_b.start < range_a.end

    @classmethod
    def is_newer_than(cls, instant_a: datetime, instant_b: datetime) -> bool:
        """instant_a が instant_b より厳密に新しいか"""
        cls._require_aware(instant_a)
        cls._require_aware(instant_b)
        return instant_a > instant_b

    @classmethod
    def all_day_range(cls, start_date: date, end_date: Optional[date], zone_id: str) -> TimeRange:
        """終日イベントを [開始日0時, 終了日0時) に正規化。終了日なしは開始+24時間"""
        start = cls.to_absolute(datetime.combine(start_date, time.min), zone_id)
        if end_date is None or end_date <= start_date:
            return TimeRange(start, start + timedelta(hours=24))
        end = cls.to_absolute(datetime.combine(end_date, time.min), zone_id)
        return TimeRange(start, end)

    @classmethod
    def parse_provider_time(cls, field: Dict[str, Any], default_zone: str) -> Tuple[datetime, bool]:
        """プロバイダーの {dateTime|date, timeZone?} を解析 → (UTC時刻, 終日か)"""
        zone_id = field.get('timeZone') or default_zone

        if field.get('dateTime'):
            parsed = parse_iso8601(field['dateTime'])
            if parsed.tzinfo is None:
                return cls.to_absolute(parsed, zone_id), False
            return parsed.astimezone(timezone.utc), False

        if field.get('date'):
            day = date.fromisoformat(field['date'])
            return cls.to_absolute(datetime.combine(day, time.min), zone_id), True

        raise ValueError(f"Provider time field has neither dateTime nor date: {field}")

    @classmethod
    def to_provider_time(cls, instant: datetime, zone_id: str) -> Dict[str, str]:
        """送信用ペイロード {dateTime, timeZone}"""
        zone = cls.zone(zone_id)
        cls._require_aware(instant)
        return {
            'dateTime': instant.astimezone(zone).isoformat(),
            'timeZone': zone_id,
        }

    @staticmethod
    def now_utc() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _require_aware(instant: datetime):
        if instant.tzinfo is None:
            raise ValueError(f"Expected an absolute (timezone-aware) instant, got naive {instant}")


def parse_iso8601(value: str) -> datetime:
    """ISO-8601文字列の解析（末尾Z対応）"""
    return datetime.fromisoformat(value.strip().replace('Z', '+00:00'))


def to_storage(instant: Optional[datetime]) -> Optional[str]:
    """保存用UTC文字列（固定精度のため辞書順 = 時系列順）"""
    if instant is None:
        return None
    if instant.tzinfo is None:
        raise ValueError(f"Refusing to store naive datetime {instant}")
    return instant.astimezone(timezone.utc).isoformat(timespec=STORAGE_TIMESPEC)


def from_storage(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_iso8601(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
