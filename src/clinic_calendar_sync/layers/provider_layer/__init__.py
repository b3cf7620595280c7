"""
プロバイダー層 - 外部カレンダーAPIクライアント・エラー分類・リトライ
"""

from .error_handler import CategorizedError, ErrorHandler
from .provider_client import EventListing, ProviderClient
from .retry_policy import RetryPolicy

__all__ = ['CategorizedError', 'ErrorHandler', 'EventListing', 'ProviderClient', 'RetryPolicy']
