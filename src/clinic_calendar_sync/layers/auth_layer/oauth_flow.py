"""
OAuth認可フロー制御 - 認可コード + PKCE (S256)
IDLE → AUTHORIZING → AWAITING_CALLBACK → {COMPLETE | FAILED}
"""

import asyncio
import base64
import hashlib
import inspect
import json
import logging
import secrets
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlencode

import aiohttp

from ...config.enhanced_config import OAuthConfig, SyncLayerConfig
from ...core.exceptions import (
    CalendarSyncError, CallbackTimeout, ConnectionInactive, OAuthProviderError, OAuthStateMismatch,
    PopupBlocked, TokenExchangeFailed
)
from ...core.interfaces import LocalStore
from ...core.models import Connection, OAuthState, SyncState
from ...core.time_representation import TimeRepresentation
from ...utils.enhanced_logger import EnhancedLogger, OperationContext, get_logger
from ..notification_layer.sync_notifier import SyncEventType, SyncNotifier
from ..provider_layer.error_handler import ErrorHandler
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

Presenter = Callable[[str], Union[None, Awaitable[None]]]


class OAuthFlowState(Enum):
    """認可フローの状態"""
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    AWAITING_CALLBACK = "awaiting_callback"
    COMPLETE = "complete"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    OAuthFlowState.IDLE: {OAuthFlowState.AUTHORIZING, OAuthFlowState.AWAITING_CALLBACK, OAuthFlowState.FAILED},
    OAuthFlowState.AUTHORIZING: {OAuthFlowState.AWAITING_CALLBACK, OAuthFlowState.FAILED},
    OAuthFlowState.AWAITING_CALLBACK: {OAuthFlowState.COMPLETE, OAuthFlowState.FAILED},
    OAuthFlowState.COMPLETE: set(),
    OAuthFlowState.FAILED: set(),
}


def generate_code_verifier() -> str:
    """PKCE code_verifier（86文字、RFC 7636の43〜128文字の範囲内）"""
    return secrets.token_urlsafe(64)


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')


class OAuthFlowController:
    """1回分の対話的認可ハンドシェイク

    コールバックは同じインスタンス（start済み）でも、別リクエストで作られた
    新しいインスタンス（IDLE）でも処理できる。stateは保存済みの一時状態と照合し、
    一致しなければトークン交換も接続作成も行わない。
    """

    def __init__(self, store: LocalStore, token_vault: TokenVault, session: aiohttp.ClientSession,
                 notifier: SyncNotifier, oauth_config: Optional[OAuthConfig] = None,
                 presenter: Optional[Presenter] = None, provider: str = "google",
                 default_timezone: str = SyncLayerConfig.default_timezone,
                 error_handler: Optional[ErrorHandler] = None,
                 audit_logger: Optional[EnhancedLogger] = None,
                 clock=TimeRepresentation.now_utc):
        self.store = store
        self.token_vault = token_vault
        self.session = session
        self.notifier = notifier
        self.config = oauth_config or OAuthConfig()
        self.presenter = presenter
        self.provider = provider
        self.default_timezone = default_timezone
        self.error_handler = error_handler or ErrorHandler()
        self.audit_logger = audit_logger or get_logger()
        self.clock = clock
        self.timeout = aiohttp.ClientTimeout(total=30)

        self.state = OAuthFlowState.IDLE
        self.connection: Optional[Connection] = None
        self.error: Optional[CalendarSyncError] = None
        self._state_token: Optional[str] = None
        self._finished = asyncio.Event()
        self._notified = False
        self._operation: Optional[OperationContext] = None

    def _transition(self, new_state: OAuthFlowState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid OAuth flow transition {self.state.value} -> {new_state.value}")
        logger.debug(f"OAuth flow {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def start(self, clinician_id: str, timezone: Optional[str] = None) -> str:
        """state・PKCEを生成・保存し、認可URLを提示役に渡す"""
        if self.state != OAuthFlowState.IDLE:
            raise RuntimeError(f"OAuth flow already started (state={self.state.value})")

        zone_id = timezone or self.default_timezone
        TimeRepresentation.zone(zone_id)

        self._operation = self.audit_logger.log_operation_start(
            "oauth_flow", clinician_id=clinician_id, provider=self.provider
        )
        self._transition(OAuthFlowState.AUTHORIZING)

        now = self.clock()
        self._state_token = secrets.token_urlsafe(32)
        verifier = generate_code_verifier()

        await self.store.save_oauth_state(OAuthState(
            state=self._state_token,
            clinician_id=clinician_id,
            provider=self.provider,
            code_verifier=verifier,
            redirect_uri=self.config.redirect_uri,
            timezone=zone_id,
            expires_at=now + timedelta(minutes=self.config.state_ttl_minutes),
            created_at=now
        ))

        auth_url = self.build_authorization_url(self._state_token, code_challenge_s256(verifier))

        try:
            if self.presenter is not None:
                presented = self.presenter(auth_url)
                if inspect.isawaitable(presented):
                    await presented
        except PopupBlocked as e:
            await self._fail(e)
            raise

        self._transition(OAuthFlowState.AWAITING_CALLBACK)
        logger.info(f"OAuth authorization started for clinician {clinician_id} ({self.provider})")
        return auth_url

    def build_authorization_url(self, state: str, code_challenge: str) -> str:
        params = {
            'response_type': 'code',
            'client_id': self.config.client_id,
            'redirect_uri': self.config.redirect_uri,
            'scope': ' '.join(self.config.scopes),
            'state': state,
            'code_challenge': code_challenge,
            'code_challenge_method': 'S256',
            'access_type': 'offline',
            'prompt': 'consent',
            'include_granted_scopes': 'true',
        }
        return f"{self.config.authorization_endpoint}?{urlencode(params)}"

    async def handle_callback(self, params: Dict[str, str]) -> Connection:
        """リダイレクトコールバック {code, state} または {error, state}"""
        if self.state in (OAuthFlowState.COMPLETE, OAuthFlowState.FAILED):
            raise OAuthStateMismatch("OAuth flow already finished; authorization codes are single-use")
        if self.state == OAuthFlowState.IDLE:
            self._transition(OAuthFlowState.AWAITING_CALLBACK)

        received_state = params.get('state')

        if not received_state or (self._state_token and not secrets.compare_digest(
                received_state.encode('utf-8'), self._state_token.encode('utf-8'))):
            return await self._reject_state("callback state does not match the pending authorization")

        stored = await self.store.pop_oauth_state(received_state)
        if stored is None or stored.provider != self.provider:
            return await self._reject_state("callback state is unknown or was already used")
        if stored.is_expired(self.clock()):
            return await self._reject_state("callback state has expired")

        if params.get('error'):
            description = params.get('error_description') or params['error']
            await self._fail(OAuthProviderError(f"Provider returned an authorization error: {description}",
                                                details={'error': params['error']}))
            raise self.error

        code = params.get('code')
        if not code:
            await self._fail(OAuthProviderError("Callback did not include an authorization code"))
            raise self.error

        try:
            tokens = await self._exchange_code(code, stored)
            email = await self._fetch_account_email(tokens['access_token'])
            connection = await self._activate_connection(stored, tokens, email)
            await self.token_vault.store_initial_grant(connection.id, tokens)
        except CalendarSyncError as e:
            await self._fail(e)
            raise

        self.connection = connection
        self._transition(OAuthFlowState.COMPLETE)
        await self._notify_once(SyncEventType.CONNECTED, {
            'connection': connection.to_dict(),
        }, connection.id)
        if self._operation:
            self.audit_logger.log_operation_end(self._operation, success=True, connection_id=connection.id)
        self._finished.set()

        logger.info(f"OAuth flow complete: connection {connection.id} for clinician {connection.clinician_id}")
        return connection

    async def wait_for_completion(self, timeout: Optional[float] = None) -> Connection:
        """コールバック待機（上限時間を過ぎたらCallbackTimeout）"""
        timeout = self.config.callback_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            if self.state == OAuthFlowState.AWAITING_CALLBACK:
                await self._fail(CallbackTimeout(f"No OAuth callback received within {timeout:.0f}s"))

        if self.state == OAuthFlowState.COMPLETE and self.connection:
            return self.connection
        raise self.error or CallbackTimeout("OAuth flow did not complete")

    async def disconnect(self, connection_id: str) -> Connection:
        """接続の論理削除とトークン破棄"""
        connection = await self.store.get_connection(connection_id)
        if connection is None or not connection.is_active:
            raise ConnectionInactive(f"Connection {connection_id} is not active")

        await self.token_vault.revoke(connection_id)
        connection.is_active = False
        connection.sync_state = SyncState.STOPPED
        connection.last_error = None
        await self.store.upsert_connection(connection)

        logger.info(f"Disconnected connection {connection_id}")
        return connection

    async def _reject_state(self, reason: str):
        error = OAuthStateMismatch(f"OAuth state mismatch: {reason}")
        self.audit_logger.log_security_event(
            "OAuth callback rejected", reason=reason, provider=self.provider, operation="oauth_callback"
        )
        await self._fail(error)
        raise error

    async def _exchange_code(self, code: str, stored: OAuthState) -> Dict[str, Any]:
        """認可コードの交換（コードは一度きりなので再試行しない）"""
        data = {
            'code': code,
            'client_id': self.config.client_id,
            'client_secret': self.config.client_secret,
            'redirect_uri': stored.redirect_uri,
            'grant_type': 'authorization_code',
            'code_verifier': stored.code_verifier,
        }

        try:
            async with self.session.post(self.config.token_endpoint, data=data, timeout=self.timeout) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TokenExchangeFailed(f"Token exchange request failed: {e.__class__.__name__}") from e

        try:
            payload = json.loads(body) if body else {}
        except json.JSONDecodeError:
            payload = {}

        if status != 200 or not isinstance(payload, dict) or not payload.get('access_token'):
            reason = payload.get('error_description') or payload.get('error') if isinstance(payload, dict) else None
            raise TokenExchangeFailed(f"Token exchange failed with HTTP {status}: {reason or 'no access token'}",
                                      details={'status': status})

        return payload

    async def _fetch_account_email(self, access_token: str) -> Optional[str]:
        try:
            async with self.session.get(self.config.userinfo_endpoint,
                                        headers={'Authorization': f"Bearer {access_token}"},
                                        timeout=self.timeout) as response:
                if response.status != 200:
                    logger.warning(f"Userinfo request returned {response.status}; account email unknown")
                    return None
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Userinfo request failed: {e}")
            return None

        try:
            return json.loads(body).get('email')
        except (json.JSONDecodeError, AttributeError):
            return None

    async def _activate_connection(self, stored: OAuthState, tokens: Dict[str, Any],
                                   email: Optional[str]) -> Connection:
        """(clinician, provider) の接続を作成または再有効化"""
        scopes = tokens.get('scope', '').split() or list(self.config.scopes)
        existing = await self.store.find_connection(stored.clinician_id, stored.provider)

        if existing:
            connection = existing
            connection.is_active = True
            connection.account_email = email or connection.account_email
            connection.scopes = scopes
            connection.timezone = stored.timezone
            connection.sync_state = SyncState.STOPPED
            connection.last_error = None
            logger.info(f"Reactivating connection {connection.id}")
        else:
            connection = Connection(
                id=str(uuid.uuid4()),
                clinician_id=stored.clinician_id,
                provider=stored.provider,
                account_email=email,
                is_active=True,
                scopes=scopes,
                timezone=stored.timezone
            )

        return await self.store.upsert_connection(connection)

    async def _fail(self, error: CalendarSyncError):
        if self.state in (OAuthFlowState.COMPLETE, OAuthFlowState.FAILED):
            return
        self.error = error
        self._transition(OAuthFlowState.FAILED)

        categorized = self.error_handler.handle_error(error, {'provider': self.provider})
        await self._notify_once(SyncEventType.AUTH_ERROR, categorized.to_dict())
        if self._operation:
            self.audit_logger.log_operation_end(self._operation, success=False,
                                                error_type=categorized.error_type.value)
        self._finished.set()

    async def _notify_once(self, event_type: SyncEventType, payload: Dict[str, Any],
                           connection_id: Optional[str] = None):
        if self._notified:
            return
        self._notified = True
        await self.notifier.notify(event_type, payload, connection_id)
