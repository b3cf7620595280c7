"""
競合解決システム - 同一イベントのローカル版とリモート版のどちらを採用するか判定
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from ...core.models import ExternalEvent, LocalEvent, SyncMapping
from ...core.time_representation import TimeRepresentation

logger = logging.getLogger(__name__)


class ConflictStrategy(Enum):
    """競合解決戦略"""
    LATEST_WINS = "latest_wins"      # 前回同期以降にリモートが更新されていればリモート
    LOCAL_WINS = "local_wins"        # 常にローカル優先
    REMOTE_WINS = "remote_wins"      # 常にリモート優先


class Winner(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ConflictType(Enum):
    """競合タイプ"""
    TITLE_CONFLICT = "title_conflict"
    TIME_CONFLICT = "time_conflict"
    DESCRIPTION_CONFLICT = "description_conflict"


@dataclass
class ConflictItem:
    """競合項目"""
    field_name: str
    local_value: Any
    remote_value: Any
    conflict_type: ConflictType

    def __str__(self) -> str:
        return f"{self.field_name}: local='{self.local_value}' vs remote='{self.remote_value}'"


@dataclass
class ConflictRecord:
    """解決記録"""
    local_event_id: str
    external_event_id: str
    winner: Winner
    reason: str
    conflicts: List[ConflictItem] = field(default_factory=list)
    resolved_at: datetime = field(default_factory=TimeRepresentation.now_utc)

    def summary(self) -> str:
        fields = ", ".join(item.field_name for item in self.conflicts) or "no field differences"
        return f"{self.winner.value} wins for {self.local_event_id}/{self.external_event_id} ({self.reason}; {fields})"


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, config: Optional[Dict[str, Any]] = None, history_size: int = 100):
        config = config or {}
        self.strategy = ConflictStrategy(config.get('strategy', ConflictStrategy.LATEST_WINS.value))
        self.history: Deque[ConflictRecord] = deque(maxlen=history_size)

        # 統計情報
        self.conflicts_detected = 0
        self.local_wins = 0
        self.remote_wins = 0

    def resolve(self, local: LocalEvent, remote: ExternalEvent,
                mapping: Optional[SyncMapping]) -> Optional[Winner]:
        """勝者を判定。マッピングがなければ競合ではない（None）"""
        if mapping is None:
            return None

        winner, reason = self._decide(remote, mapping)
        conflicts = self.compare(local, remote)

        record = ConflictRecord(
            local_event_id=local.id,
            external_event_id=remote.external_id,
            winner=winner,
            reason=reason,
            conflicts=conflicts
        )
        self.history.append(record)

        self.conflicts_detected += 1
        if winner == Winner.REMOTE:
            self.remote_wins += 1
        else:
            self.local_wins += 1

        logger.debug(f"Conflict resolved using {self.strategy.value}: {record.summary()}")
        return winner

    def _decide(self, remote: ExternalEvent, mapping: SyncMapping):
        if self.strategy == ConflictStrategy.LOCAL_WINS:
            return Winner.LOCAL, "local_wins strategy"
        if self.strategy == ConflictStrategy.REMOTE_WINS:
            return Winner.REMOTE, "remote_wins strategy"

        # 更新時刻が不明なリモート編集は捨てない
        if remote.last_modified is None:
            return Winner.REMOTE, "remote has no last-modified timestamp"
        if mapping.updated_at is None:
            return Winner.REMOTE, "mapping has no last sync timestamp"
        if TimeRepresentation.is_newer_than(remote.last_modified, mapping.updated_at):
            return Winner.REMOTE, "remote modified after last sync"
        return Winner.LOCAL, "remote unchanged since last sync"

    def compare(self, local: LocalEvent, remote: ExternalEvent) -> List[ConflictItem]:
        """フィールド単位の差分"""
        conflicts = []

        if (local.title or '').strip() != (remote.title or '').strip():
            conflicts.append(ConflictItem("title", local.title, remote.title, ConflictType.TITLE_CONFLICT))

        if local.start != remote.start:
            conflicts.append(ConflictItem("start", local.start, remote.start, ConflictType.TIME_CONFLICT))

        if local.end != remote.end:
            conflicts.append(ConflictItem("end", local.end, remote.end, ConflictType.TIME_CONFLICT))

        if (local.notes or '').strip() != (remote.description or '').strip():
            conflicts.append(ConflictItem("description", local.notes, remote.description,
                                          ConflictType.DESCRIPTION_CONFLICT))

        return conflicts

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        return {
            "conflicts_detected": self.conflicts_detected,
            "local_wins": self.local_wins,
            "remote_wins": self.remote_wins,
            "strategy_used": self.strategy.value,
            "recent": [record.summary() for record in list(self.history)[-5:]],
        }
