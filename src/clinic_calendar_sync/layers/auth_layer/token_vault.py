"""
トークン保管庫 - 接続ごとのOAuth資格情報の永続化と自動リフレッシュ
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import aiohttp

from ...config.enhanced_config import OAuthConfig
from ...core.exceptions import (
    ProviderRateLimited, ProviderRejected, ProviderUnavailable, ReauthorizationRequired, TokenExchangeFailed
)
from ...core.interfaces import LocalStore
from ...core.models import SyncState, TokenRecord
from ...core.time_representation import TimeRepresentation

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600

# クライアント設定の誤り（リフレッシュトークンは有効なまま）
CLIENT_ERRORS = frozenset({'invalid_client', 'unauthorized_client'})


class TokenVault:
    """有効なアクセストークンを提供する

    リフレッシュと保存は接続ごとのロック内で行い、
    重なった呼び出しは先行したリフレッシュの結果を再利用する。
    """

    def __init__(self, store: LocalStore, session: aiohttp.ClientSession,
                 oauth_config: Optional[OAuthConfig] = None, clock=TimeRepresentation.now_utc):
        self.store = store
        self.session = session
        self.oauth_config = oauth_config or OAuthConfig()
        self.clock = clock
        self.refresh_skew = timedelta(minutes=self.oauth_config.refresh_skew_minutes)
        self.timeout = aiohttp.ClientTimeout(total=30)
        self._locks: Dict[str, asyncio.Lock] = {}
        self.refresh_count = 0

    def _lock_for(self, connection_id: str) -> asyncio.Lock:
        return self._locks.setdefault(connection_id, asyncio.Lock())

    async def get_valid_access_token(self, connection_id: str) -> str:
        """期限5分前を過ぎていればリフレッシュしてから返す"""
        record = await self._require_record(connection_id)
        if not record.needs_refresh(self.clock(), self.refresh_skew):
            return record.access_token

        async with self._lock_for(connection_id):
            # 待っている間に別の呼び出しがリフレッシュ済みの可能性
            record = await self._require_record(connection_id)
            if not record.needs_refresh(self.clock(), self.refresh_skew):
                return record.access_token

            refreshed = await self._refresh_locked(record)
            return refreshed.access_token

    async def force_refresh(self, connection_id: str, rejected_token: str) -> str:
        """プロバイダーが401で拒否したトークンの強制リフレッシュ"""
        async with self._lock_for(connection_id):
            record = await self._require_record(connection_id)
            if record.access_token != rejected_token and not record.is_expired(self.clock()):
                logger.debug(f"Token for connection {connection_id} already replaced, skipping forced refresh")
                return record.access_token

            if not record.refresh_token:
                raise ReauthorizationRequired(connection_id, "access token was rejected and no refresh token is stored")

            refreshed = await self._refresh_locked(record, forced=True)
            return refreshed.access_token

    async def store_initial_grant(self, connection_id: str, token_response: Dict[str, Any]) -> TokenRecord:
        """認可コード交換の結果を保存"""
        if not token_response.get('access_token'):
            raise TokenExchangeFailed("Token endpoint response did not include an access token")

        record = self._record_from_response(connection_id, token_response, previous_refresh_token=None)
        async with self._lock_for(connection_id):
            await self.store.save_token_record(record)

        logger.info(
            f"Initial grant stored for connection {connection_id} "
            f"(refresh token: {'yes' if record.refresh_token else 'no'})"
        )
        return record

    async def revoke(self, connection_id: str):
        """切断時のトークン破棄（プロバイダー側の取り消しはベストエフォート）"""
        async with self._lock_for(connection_id):
            record = await self.store.get_token_record(connection_id)
            if record is None:
                return

            token = record.refresh_token or record.access_token
            try:
                async with self.session.post(self.oauth_config.revocation_endpoint, data={'token': token},
                                             timeout=self.timeout) as response:
                    if response.status >= 400:
                        logger.warning(f"Provider revocation for connection {connection_id} returned {response.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Provider revocation for connection {connection_id} failed: {e}")

            await self.store.delete_token_record(connection_id)

        logger.info(f"Tokens revoked for connection {connection_id}")

    async def _require_record(self, connection_id: str) -> TokenRecord:
        record = await self.store.get_token_record(connection_id)
        if record is None:
            raise ReauthorizationRequired(connection_id, "no stored credentials")
        return record

    async def _refresh_locked(self, record: TokenRecord, forced: bool = False) -> TokenRecord:
        """ロック保持中に呼ぶこと"""
        connection_id = record.connection_id
        now = self.clock()

        if not record.refresh_token:
            if record.is_expired(now):
                raise ReauthorizationRequired(connection_id, "access token expired and no refresh token is stored")
            # 期限前だがリフレッシュ手段がない: 期限までは現トークンを使う
            return record

        logger.info(f"Refreshing access token for connection {connection_id} (forced={forced})")
        data = {
            'client_id': self.oauth_config.client_id,
            'client_secret': self.oauth_config.client_secret,
            'refresh_token': record.refresh_token,
            'grant_type': 'refresh_token',
        }

        try:
            async with self.session.post(self.oauth_config.token_endpoint, data=data,
                                         timeout=self.timeout) as response:
                status = response.status
                body = await response.text()
                retry_after = response.headers.get('Retry-After')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailable(f"Token refresh for connection {connection_id} failed: {e}") from e

        payload = _parse_json(body)

        if status == 429:
            raise ProviderRateLimited(f"Token refresh rate limited for connection {connection_id}",
                                      retry_after=float(retry_after) if retry_after else None)
        if status >= 500:
            raise ProviderUnavailable(f"Token endpoint returned {status} for connection {connection_id}")
        error_code = payload.get('error') if isinstance(payload.get('error'), str) else None
        reason = payload.get('error_description') or error_code or f"HTTP {status}"
        if error_code == 'invalid_grant':
            # リフレッシュトークン自体が失効・取り消し済み
            await self._mark_rejected(connection_id, reason)
            raise ReauthorizationRequired(connection_id, f"refresh token rejected ({reason})")
        if error_code in CLIENT_ERRORS:
            raise TokenExchangeFailed(f"Token refresh for connection {connection_id} failed: {reason}",
                                      details={'connection_id': connection_id, 'error': error_code})
        if status >= 400 or not payload.get('access_token'):
            raise ProviderRejected(f"Token endpoint rejected refresh for connection {connection_id}: {reason}",
                                   status=status, details={'connection_id': connection_id, 'error': error_code})

        refreshed = self._record_from_response(connection_id, payload, record.refresh_token)
        if refreshed.is_expired(self.clock()):
            raise ReauthorizationRequired(connection_id, "provider issued an already expired access token")

        await self.store.save_token_record(refreshed)
        self.refresh_count += 1

        logger.info(f"Access token refreshed for connection {connection_id}, expires at {refreshed.expires_at.isoformat()}")
        return refreshed

    async def _mark_rejected(self, connection_id: str, reason: str):
        logger.error(f"Refresh token rejected for connection {connection_id}: {reason}")
        await self.store.clear_refresh_token(connection_id)
        await self.store.update_connection_state(
            connection_id, SyncState.ERROR, last_error=f"Reauthorization required: {reason}"
        )

    def _record_from_response(self, connection_id: str, payload: Dict[str, Any],
                              previous_refresh_token: Optional[str]) -> TokenRecord:
        now: datetime = self.clock()
        expires_in = payload.get('expires_in', DEFAULT_EXPIRES_IN)
        return TokenRecord(
            connection_id=connection_id,
            access_token=payload['access_token'],
            refresh_token=payload.get('refresh_token') or previous_refresh_token,
            expires_at=now + timedelta(seconds=int(expires_in)),
            token_type=payload.get('token_type', 'Bearer')
        )


def _parse_json(body: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(body) if body else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
