"""
calsync コマンド - 設定テンプレート作成・マイグレーション・手動同期・状態確認
"""

import argparse
import asyncio
import dataclasses
import json
import sys
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from .config.enhanced_config import ConfigManager
from .core.exceptions import CalendarSyncError
from .core.models import SyncState
from .core.time_representation import TimeRepresentation
from .layers.sync_layer.sync_orchestrator import SyncMode
from .service import CalendarSyncService
from .utils.enhanced_logger import setup_logging


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"YYYY-MM-DD 形式で指定してください: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calsync", description="Clinic calendar sync engine")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ（main.yaml など）")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-config", help="既定値の設定テンプレートを書き出す")
    commands.add_parser("migrate", help="ローカルストアのスキーマを適用")
    commands.add_parser("cleanup", help="保持期間を過ぎた同期ログと期限切れのOAuth stateを削除")

    status = commands.add_parser("status", help="ストア統計と接続状態をJSONで表示")
    status.add_argument("--connection", help="接続ID")

    sync = commands.add_parser("sync", help="接続1件の同期パスを実行")
    sync.add_argument("connection", help="接続ID")
    sync.add_argument("--start", type=_parse_date, required=True, help="開始日 (YYYY-MM-DD、接続のタイムゾーン)")
    sync.add_argument("--end", type=_parse_date, help="終了日（この日を含む）。未指定時は開始日のみ")
    sync.add_argument("--mode", choices=[mode.value for mode in SyncMode], help="同期方向。未指定時は設定値")
    return parser


async def _sync(service: CalendarSyncService, args: argparse.Namespace) -> int:
    connection = await service.store.get_connection(args.connection)
    if connection is None:
        print(f"Unknown connection: {args.connection}", file=sys.stderr)
        return 2

    last_day = args.end or args.start
    if last_day < args.start:
        print("--end must not be earlier than --start", file=sys.stderr)
        return 2

    window = TimeRepresentation.all_day_range(args.start, last_day + timedelta(days=1), connection.timezone)
    result = await service.orchestrator.bidirectional_sync(
        connection.id, time_range=window, mode=SyncMode(args.mode) if args.mode else None
    )

    if result.push:
        print(result.push.summary())
    if result.pull:
        print(result.pull.summary())
    if result.error:
        print(f"Sync failed: {result.error.message}\nHint: {result.error.hint}", file=sys.stderr)
    return 0 if result.sync_state == SyncState.STOPPED else 1


async def _run(args: argparse.Namespace, manager: ConfigManager) -> int:
    service = CalendarSyncService(manager.load_config(), security_manager=manager.get_security_manager())
    async with service:
        if args.command == "migrate":
            await service.migrate()
            print(f"Schema applied to {service.store.database_path}")
            return 0

        if args.command == "cleanup":
            await service.cleanup()
            print(f"Removed sync data older than {service.config.storage.retention_days} days")
            return 0

        if args.command == "status":
            report = await service.health()
            if args.connection:
                view = await service.orchestrator.get_connection_state(args.connection)
                report['connection'] = {**dataclasses.asdict(view), 'sync_state': view.sync_state.value}
            print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
            return 0

        return await _sync(service, args)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    manager = ConfigManager(args.config_dir)

    if args.command == "init-config":
        manager.save_config_template()
        print(f"Config templates written to {manager.config_dir}")
        return 0

    setup_logging(manager.load_config().logging)
    try:
        return asyncio.run(_run(args, manager))
    except CalendarSyncError as e:
        print(f"Error: {e.message}\nHint: {e.hint}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
