"""AI プロバイダのカタログとチャットクライアントを提供するパッケージ。"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

# チャット呼び出しをタイムアウト制御付きで実行するためのスレッドプール。
_llm_executor: ThreadPoolExecutor = ThreadPoolExecutor(max_workers=4)


def _get_llm_executor() -> ThreadPoolExecutor:
    """チャットクライアントが共有するスレッドプールを返す。"""

    return _llm_executor


def _replace_llm_executor() -> ThreadPoolExecutor:
    """現在のスレッドプールを返し、以降の呼び出し用に新しいプールへ差し替える。"""

    global _llm_executor
    previous = _llm_executor
    _llm_executor = ThreadPoolExecutor(max_workers=4)
    return previous


from .catalog import (
    AI_PROVIDERS,
    ModelConfig,
    ProviderConfig,
    get_model_config,
    get_provider_config,
    validate_api_key_format,
)
from .llm import ChatClient, ChatReply, get_chat_client, shutdown_providers

__all__ = [
    "AI_PROVIDERS",
    "ChatClient",
    "ChatReply",
    "ModelConfig",
    "ProviderConfig",
    "get_chat_client",
    "get_model_config",
    "get_provider_config",
    "shutdown_providers",
    "validate_api_key_format",
]
