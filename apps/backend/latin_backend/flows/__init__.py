"""学習フロー（回答処理・AI チャット）を束ねるパッケージ。"""

from .ai_chat import ChatConfigurationError, ChatFlow, ChatProviderError, ChatResult
from .review import CheckedAnswer, ReviewFlow

__all__ = [
    "ChatConfigurationError",
    "ChatFlow",
    "ChatProviderError",
    "ChatResult",
    "CheckedAnswer",
    "ReviewFlow",
]
