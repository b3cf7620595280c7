"""
設定管理 - YAMLの階層化設定・CALSYNC_* 環境変数・OAuthクライアント秘密情報・トークン暗号鍵

読み込み順（後勝ち）:
    config/main.yaml → config/<section>.yaml → CALSYNC_* 環境変数
秘密情報（後勝ち）:
    secrets/oauth_client.json → secrets/.env → 環境変数
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)

CONFIG_SECTIONS = ('provider', 'oauth', 'sync_layer', 'storage', 'logging', 'security')


@dataclass
class ProviderConfig:
    """外部カレンダーAPI（Google Calendar v3 互換）"""
    name: str = "google"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    page_size: int = 250
    max_events: int = 5000
    request_timeout_seconds: float = 30.0


@dataclass
class OAuthConfig:
    """認可コード + PKCE フローの設定"""
    authorization_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    userinfo_endpoint: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    revocation_endpoint: str = "https://oauth2.googleapis.com/revoke"
    redirect_uri: str = "http://localhost:8000/oauth/callback"
    scopes: List[str] = field(default_factory=lambda: [
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/userinfo.email",
    ])
    client_id: str = ""
    client_secret: str = ""
    state_ttl_minutes: int = 10
    callback_timeout_seconds: float = 300.0
    refresh_skew_minutes: int = 5


@dataclass
class SyncLayerConfig:
    direction: str = "bidirectional"  # push / pull / bidirectional
    batch_concurrency: int = 3
    inter_batch_delay_seconds: float = 1.0
    retry_policy: Dict[str, Union[int, float]] = field(default_factory=lambda: {
        "max_attempts": 3,
        "backoff_base": 1.0,
        "backoff_multiplier": 2.0,
        "max_delay_seconds": 30.0
    })
    conflict_resolution: Dict[str, str] = field(default_factory=lambda: {
        "strategy": "latest_wins"  # latest_wins / local_wins / remote_wins
    })
    unmatched_event_policy: str = "placeholder"  # placeholder / create / ignore
    placeholder_title: str = "Personal Block"
    default_timezone: str = "America/Chicago"


@dataclass
class StorageConfig:
    database_path: str = "data/calendar_sync.db"
    retention_days: int = 30


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_path: Optional[str] = None
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 3
    metrics_enabled: bool = True


@dataclass
class SecurityConfig:
    # false はローカル開発用（トークンを平文で保存）
    encryption_enabled: bool = True


@dataclass
class EnhancedConfig:
    """設定ツリーのルート"""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    sync_layer: SyncLayerConfig = field(default_factory=SyncLayerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development / staging / production


class SecurityManager:
    """Fernetによるトークン暗号化（保存時に暗号化、読み出し時に復号）"""

    KEY_ENV = 'CALSYNC_ENCRYPTION_KEY'

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or os.getenv(self.KEY_ENV) or self._ephemeral_key()
        self.cipher = Fernet(self.encryption_key.encode())

    def _ephemeral_key(self) -> str:
        logger.warning(
            f"No encryption key configured; generated an ephemeral key. "
            f"Tokens stored by this process become unreadable after restart unless {self.KEY_ENV} is set"
        )
        return Fernet.generate_key().decode()

    def encrypt_value(self, value: str) -> str:
        return self.cipher.encrypt(value.encode('utf-8')).decode('ascii')

    def decrypt_value(self, token: str) -> str:
        """鍵が違う場合は cryptography.fernet.InvalidToken をそのまま送出"""
        return self.cipher.decrypt(token.encode('ascii')).decode('utf-8')


class ConfigManager:
    """設定ファイル・環境変数・秘密情報の読み込み"""

    ENV_OVERRIDES = {
        'CALSYNC_DEBUG': 'debug',
        'CALSYNC_ENVIRONMENT': 'environment',
        'CALSYNC_LOG_LEVEL': 'logging.level',
        'CALSYNC_DATABASE_PATH': 'storage.database_path',
        'CALSYNC_SYNC_DIRECTION': 'sync_layer.direction',
        'CALSYNC_BATCH_CONCURRENCY': 'sync_layer.batch_concurrency',
        'CALSYNC_UNMATCHED_EVENT_POLICY': 'sync_layer.unmatched_event_policy',
        'CALSYNC_DEFAULT_TIMEZONE': 'sync_layer.default_timezone',
        'CALSYNC_REDIRECT_URI': 'oauth.redirect_uri',
    }

    SECRET_KEYS = ('CALSYNC_CLIENT_ID', 'CALSYNC_CLIENT_SECRET', SecurityManager.KEY_ENV)

    # テンプレートに書き出さない項目
    TEMPLATE_EXCLUDED = {'oauth': ('client_id', 'client_secret')}

    def __init__(self, config_dir: Union[str, Path] = "config",
                 secrets_dir: Union[str, Path, None] = None):
        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"

        self._config: Optional[EnhancedConfig] = None
        self._secrets: Optional[Dict[str, str]] = None
        self._security_manager: Optional[SecurityManager] = None

    def load_config(self, reload: bool = False) -> EnhancedConfig:
        if self._config is not None and not reload:
            return self._config

        raw = self._read_yaml("main.yaml")
        for section in CONFIG_SECTIONS:
            overlay = self._read_yaml(f"{section}.yaml")
            if overlay:
                base = raw.get(section) if isinstance(raw.get(section), dict) else {}
                raw[section] = {**base, **overlay}

        for env_key, path in self.ENV_OVERRIDES.items():
            value = os.getenv(env_key)
            if value:
                self._apply_override(raw, env_key, path, value)

        config = _build_dataclass(EnhancedConfig, raw)

        secrets = self.load_secrets(reload)
        config.oauth.client_id = secrets.get('CALSYNC_CLIENT_ID', config.oauth.client_id)
        config.oauth.client_secret = secrets.get('CALSYNC_CLIENT_SECRET', config.oauth.client_secret)

        self._config = config
        logger.info(
            f"Configuration loaded from {self.config_dir} "
            f"(environment={config.environment}, direction={config.sync_layer.direction})"
        )
        return config

    def load_secrets(self, reload: bool = False) -> Dict[str, str]:
        if self._secrets is not None and not reload:
            return self._secrets

        secrets: Dict[str, str] = {}
        secrets.update(self._client_file_secrets())
        secrets.update(_parse_dotenv(self.secrets_dir / ".env"))
        secrets.update({key: os.environ[key] for key in self.SECRET_KEYS if os.environ.get(key)})

        self._secrets = secrets
        logger.debug(f"Loaded {len(secrets)} secret value(s) from {self.secrets_dir} and environment")
        return secrets

    def get_security_manager(self) -> Optional[SecurityManager]:
        """encryption_enabled が false の場合は None"""
        if not self.load_config().security.encryption_enabled:
            logger.warning("Token encryption disabled; OAuth tokens will be stored in plain text")
            return None

        if self._security_manager is None:
            self._security_manager = SecurityManager(self.load_secrets().get(SecurityManager.KEY_ENV))
        return self._security_manager

    def save_config_template(self):
        """既定値のYAMLを書き出す（既存ファイルはそのまま）"""
        defaults = dataclasses.asdict(EnhancedConfig())
        for section, excluded in self.TEMPLATE_EXCLUDED.items():
            for key in excluded:
                defaults[section].pop(key, None)

        templates = {
            "main.yaml": {key: defaults[key] for key in ('version', 'environment', 'debug', 'logging', 'security')},
        }
        templates.update({f"{section}.yaml": defaults[section]
                          for section in ('provider', 'oauth', 'sync_layer', 'storage')})

        self.config_dir.mkdir(parents=True, exist_ok=True)
        for filename, template in templates.items():
            path = self.config_dir / filename
            if path.exists():
                continue
            path.write_text(
                yaml.safe_dump(template, default_flow_style=False, allow_unicode=True, sort_keys=False),
                encoding='utf-8'
            )
            logger.info(f"Wrote config template {path}")

    def _read_yaml(self, filename: str) -> Dict[str, Any]:
        path = self.config_dir / filename
        if not path.exists():
            return {}

        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8'))
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Could not read config file {path}: {e}")
            return {}

        return data if isinstance(data, dict) else {}

    def _apply_override(self, raw: Dict[str, Any], env_key: str, path: str, value: str):
        *parents, leaf = path.split('.')
        target = raw
        default: Any = EnhancedConfig()
        for part in parents:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
            default = getattr(default, part)

        expected = getattr(default, leaf)
        try:
            target[leaf] = _coerce(value, expected)
        except ValueError:
            logger.warning(f"Ignoring {env_key}={value!r}: expected {type(expected).__name__}")

    def _client_file_secrets(self) -> Dict[str, str]:
        path = self.secrets_dir / "oauth_client.json"
        if not path.exists():
            return {}

        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read OAuth client file {path}: {e}")
            return {}

        # Google Cloud Console の {"web": {...}} / {"installed": {...}} 形式
        client = data.get('web') or data.get('installed') or data
        pairs = (('CALSYNC_CLIENT_ID', 'client_id'), ('CALSYNC_CLIENT_SECRET', 'client_secret'))
        return {env_key: client[name] for env_key, name in pairs if client.get(name)}


def _coerce(value: str, expected: Any) -> Any:
    """既定値の型に合わせて環境変数の文字列を変換"""
    if isinstance(expected, bool):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(expected, (int, float)):
        return type(expected)(value)
    return value


def _parse_dotenv(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}

    values = {}
    for line in path.read_text(encoding='utf-8').splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        if line.startswith('export '):
            line = line[len('export '):]
        key, _, value = line.partition('=')
        values[key.strip()] = value.strip().strip('"\'')
    return values


def _build_dataclass(cls, data: Optional[Dict[str, Any]]):
    """dictからdataclassを再帰的に構築（未知のキーは警告して無視）"""
    known = {f.name: f for f in dataclasses.fields(cls)}
    kwargs = {}

    for key, value in (data or {}).items():
        definition = known.get(key)
        if definition is None:
            logger.warning(f"Ignoring unknown configuration key {cls.__name__}.{key}")
            continue

        nested = definition.default_factory
        if dataclasses.is_dataclass(nested) and isinstance(value, dict):
            kwargs[key] = _build_dataclass(nested, value)
        else:
            kwargs[key] = value

    return cls(**kwargs)


_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Union[str, Path] = "config") -> ConfigManager:
    """プロセス共通の ConfigManager（初回呼び出しの config_dir を使う）"""
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager(config_dir)

    return _config_manager


def get_config(reload: bool = False) -> EnhancedConfig:
    return get_config_manager().load_config(reload)
