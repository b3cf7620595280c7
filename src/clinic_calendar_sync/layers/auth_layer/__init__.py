"""
認可層 - OAuth認可フローとトークン管理
"""

from .oauth_flow import OAuthFlowController, OAuthFlowState
from .token_vault import TokenVault

__all__ = ['OAuthFlowController', 'OAuthFlowState', 'TokenVault']
