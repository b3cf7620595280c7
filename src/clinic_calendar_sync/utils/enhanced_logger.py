"""
同期監査ログ - structlog による構造化ログと同期操作メトリクス
トークン・認可コードは出力前に伏せ字にする
"""

import dataclasses
import logging
import sys
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

PACKAGE_LOGGER = "clinic_calendar_sync"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

REDACTED = "***"
REDACTED_KEYS = frozenset({
    'access_token', 'refresh_token', 'code', 'code_verifier', 'client_secret', 'authorization'
})

# 成功率(%) → 健全性
HEALTH_THRESHOLDS = ((98.0, "healthy"), (90.0, "warning"), (70.0, "degraded"))


class LogLevel(Enum):
    """ログレベル（値は logging の数値レベル）"""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


class AlertLevel(Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    SECURITY = "security"


def redact(context: Dict[str, Any]) -> Dict[str, Any]:
    """秘密情報キーの値を伏せ字に（空値はそのまま残す）"""
    return {
        key: (REDACTED if key in REDACTED_KEYS and value else value)
        for key, value in context.items()
    }


def health_status(success_rate: float) -> str:
    for threshold, status in HEALTH_THRESHOLDS:
        if success_rate >= threshold:
            return status
    return "critical"


@dataclass
class OperationStats:
    """操作名ごとの集計"""
    succeeded: int = 0
    failed: int = 0
    total_duration: float = 0.0

    @property
    def average_duration(self) -> float:
        return self.total_duration / self.succeeded if self.succeeded else 0.0


@dataclass
class OperationContext:
    """log_operation_start が返す計測ハンドル"""
    operation: str
    context: Dict[str, Any]
    started: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class MetricsCollector:
    """同期操作メトリクス（プロセス内のみ保持）"""

    def __init__(self):
        self.operations: Dict[str, OperationStats] = defaultdict(OperationStats)
        self.error_types: Counter = Counter()
        self.events: Counter = Counter()
        self._started = time.monotonic()

    def record_success(self, operation: str, duration: float):
        stats = self.operations[operation]
        stats.succeeded += 1
        stats.total_duration += duration

    def record_failure(self, operation: str, error_type: str):
        self.operations[operation].failed += 1
        self.error_types[f"{operation}:{error_type}"] += 1

    def record_event(self, name: str, count: int = 1):
        self.events[name] += count

    @property
    def success_rate(self) -> float:
        succeeded = sum(stats.succeeded for stats in self.operations.values())
        total = succeeded + sum(stats.failed for stats in self.operations.values())
        return succeeded / total * 100 if total else 100.0

    def get_health_summary(self) -> Dict[str, Any]:
        return {
            'uptime_seconds': time.monotonic() - self._started,
            'success_rate_percent': self.success_rate,
            'total_operations': sum(s.succeeded + s.failed for s in self.operations.values()),
            'avg_durations': {
                name: stats.average_duration for name, stats in self.operations.items() if stats.succeeded
            },
            'errors_by_type': dict(self.error_types),
            'security_events': self.events['security_event'],
        }


class EnhancedLogger:
    """同期パス・認可フローの監査ロガー

    structlog でJSON 1行に整形し、標準 logging の <name>.audit ロガーへ渡す。
    ハンドラはパッケージロガーに付けるので、各モジュールの
    ``logging.getLogger(__name__)`` の出力も同じ出力先に流れる。
    """

    def __init__(self,
                 name: str = PACKAGE_LOGGER,
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True,
                 max_bytes: int = DEFAULT_MAX_BYTES,
                 backup_count: int = DEFAULT_BACKUP_COUNT):
        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics = MetricsCollector() if metrics_enabled else None

        self.structured_logger = self._configure_structlog()
        self.logger = self._configure_stdlib(max_bytes, backup_count)

    def _configure_structlog(self):
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
                structlog.processors.JSONRenderer(ensure_ascii=False, default=str),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(self.log_level.value),
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        return structlog.get_logger(f"{self.name}.audit")

    def _configure_stdlib(self, max_bytes: int, backup_count: int) -> logging.Logger:
        std_logger = logging.getLogger(self.name)
        std_logger.setLevel(self.log_level.value)
        if std_logger.handlers:
            return std_logger

        handlers = [logging.StreamHandler(sys.stderr)]
        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(RotatingFileHandler(
                self.log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            ))

        formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
        for handler in handlers:
            handler.setFormatter(formatter)
            std_logger.addHandler(handler)
        return std_logger

    def debug(self, message: str, **context):
        self._emit(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context):
        self._emit(LogLevel.INFO, message, context)

    def warning(self, message: str, **context):
        self._emit(LogLevel.WARNING, message, context)

    def error(self, message: str, error: Optional[Exception] = None, **context):
        """operation 付きのエラーは失敗として集計する"""
        if error is not None:
            context.setdefault('error_type', type(error).__name__)
            context.setdefault('error_message', str(error))
        if self.metrics and 'operation' in context:
            self.metrics.record_failure(context['operation'], context.get('error_type', 'unknown'))
        self._emit(LogLevel.ERROR, message, context)

    def critical(self, message: str, **context):
        self._emit(LogLevel.CRITICAL, message, context)

    def log_security_event(self, message: str, **context):
        """state不一致など、攻撃の可能性があるイベント"""
        if self.metrics:
            self.metrics.record_event('security_event')
        context['alert_level'] = AlertLevel.SECURITY.value
        self._emit(LogLevel.CRITICAL, f"SECURITY: {message}", context)

    def _emit(self, level: LogLevel, message: str, context: Dict[str, Any]):
        getattr(self.structured_logger, level.name.lower())(message, **redact(context))

    def log_operation_start(self, operation: str, **context) -> OperationContext:
        self.info(f"Operation started: {operation}", operation=operation, **context)
        return OperationContext(operation, context)

    def log_operation_end(self, handle: OperationContext, success: bool = True, **outcome):
        elapsed = handle.elapsed
        context = {
            **handle.context,
            **outcome,
            'operation': handle.operation,
            'duration_seconds': round(elapsed, 3),
        }

        if success:
            if self.metrics:
                self.metrics.record_success(handle.operation, elapsed)
            self.info(f"Operation completed: {handle.operation} ({elapsed:.2f}s)", **context)
        else:
            context.setdefault('alert_level', AlertLevel.WARNING.value)
            self.error(f"Operation failed: {handle.operation} ({elapsed:.2f}s)", **context)

    def get_health_status(self) -> Dict[str, Any]:
        if not self.metrics:
            return {'overall_status': 'unknown', 'metrics_enabled': False}

        summary = self.metrics.get_health_summary()
        return {
            'overall_status': health_status(summary['success_rate_percent']),
            'checked_at': datetime.now(timezone.utc).isoformat(),
            **summary
        }


_audit_logger: Optional[EnhancedLogger] = None


def get_logger() -> EnhancedLogger:
    """プロセス共通の監査ロガー"""
    global _audit_logger

    if _audit_logger is None:
        _audit_logger = EnhancedLogger()

    return _audit_logger


def setup_logging(config: Any = None) -> EnhancedLogger:
    """LoggingConfig（または同じキーのdict）から監査ロガーを作り直す"""
    if dataclasses.is_dataclass(config):
        config = dataclasses.asdict(config)
    config = config or {}
    file_path = config.get('file_path')

    global _audit_logger
    _audit_logger = EnhancedLogger(
        name=config.get('name', PACKAGE_LOGGER),
        log_level=LogLevel[str(config.get('level', 'INFO')).upper()],
        log_file=Path(file_path) if file_path else None,
        metrics_enabled=config.get('metrics_enabled', True),
        max_bytes=config.get('max_bytes', DEFAULT_MAX_BYTES),
        backup_count=config.get('backup_count', DEFAULT_BACKUP_COUNT),
    )
    return _audit_logger
