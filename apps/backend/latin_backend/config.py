from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode


DEFAULT_DB_PATH = ".data/latin.sqlite3"
_MIN_SESSION_SECRET_KEY_LENGTH = 32
_PLACEHOLDER_SESSION_SECRETS = frozenset({
    "change-me",
    "changeme",
    "change-me-to-random-value",
    "please-change-me",
})


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるアプリ設定クラス。
    - environment: 実行環境（development/staging/production など）
    - latin_db_path: 語彙・学習進捗を保存する SQLite のパス
    - session_*: セッションクッキーの署名と寿命
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    session_secret_key: str = Field(
        default="",
        description="Secret key for signing session cookies / セッションクッキー署名用シークレット",
    )
    session_cookie_name: str = Field(
        default="latin_session",
        description="Session cookie name / セッションクッキー名",
    )
    session_max_age_seconds: int = Field(
        default=60 * 60 * 24 * 14,
        description="Session lifetime in seconds / セッションの寿命（秒）",
    )
    disable_session_auth: bool = Field(
        default=False,
        description=(
            "Resolve the caller from X-User-Id instead of the session cookie (development/testing only) / "
            "セッションクッキー認証を無効化し X-User-Id で利用者を決める（開発・テスト用途のみ）"
        ),
    )

    # --- データ永続化設定 ---
    latin_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for vocabulary and progress / 語彙・進捗用SQLite DBパス",
    )
    review_queue_limit: int = Field(
        default=50,
        description="Max words returned by the due / recent queues / 復習キューの最大件数",
    )
    recent_window_hours: int = Field(
        default=24,
        description="Look-back window for the recently reviewed queue (hours) / 直近復習の対象時間",
    )
    default_daily_goal: int = Field(
        default=20,
        description="Daily goal assigned to new profiles / 新規プロフィールの1日目標語数",
    )
    vocab_seed_path: str | None = Field(
        default=None,
        description=(
            "JSONL file loaded into an empty vocabulary table at startup / "
            "起動時に語彙テーブルが空なら投入する JSONL"
        ),
    )

    # --- AI チャット ---
    llm_timeout_ms: int = Field(
        default=60000,
        description="Per-attempt timeout for LLM calls (ms) / LLM呼出しの試行毎タイムアウト(ms)",
    )
    llm_max_retries: int = Field(
        default=1,
        description="Max retries for LLM calls / LLM呼出しの最大リトライ回数",
    )
    llm_max_tokens: int = Field(
        default=1000,
        description="Max tokens for LLM completion output / LLM出力の最大トークン数",
    )
    chat_history_window: int = Field(
        default=10,
        description="Number of prior chat messages sent as context / 文脈として送る過去メッセージ数",
    )

    # --- Operations/Observability ---
    rate_limit_per_min_ip: int = Field(
        default=240,
        description="Per-IP API requests per minute / IP単位の毎分上限",
    )
    rate_limit_per_min_user: int = Field(
        default=240,
        description="Per-user API requests per minute / 認証セッション単位の毎分上限",
    )
    sentry_dsn: str | None = Field(
        default=None, description="Sentry DSN (enable if set)"
    )
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description=(
            "Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧"
        ),
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("session_secret_key", mode="after")
    @classmethod
    def _validate_session_secret(cls, value: str) -> str:
        """Refuse empty, placeholder or short session signing keys.

        推測可能な鍵のままではセッションを偽造できるため読み込み時に弾く。
        """

        secret = (value or "").strip()
        if not secret:
            raise ValueError("SESSION_SECRET_KEY is required")
        if secret.casefold() in _PLACEHOLDER_SESSION_SECRETS:
            raise ValueError(f"SESSION_SECRET_KEY is a placeholder ({secret!r}); generate a random value")
        if len(secret) < _MIN_SESSION_SECRET_KEY_LENGTH:
            raise ValueError(
                f"SESSION_SECRET_KEY needs {_MIN_SESSION_SECRET_KEY_LENGTH}+ characters, got {len(secret)}"
            )
        return secret

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _split_cors_origins(cls, raw: object) -> object:
        """Accept ``a,b`` strings or sequences; strip blanks and keep first occurrences."""

        if raw is None:
            return ()
        if isinstance(raw, str):
            raw = raw.split(",")
        if not isinstance(raw, (list, tuple, set, frozenset)):
            return raw
        origins = (item.strip() for item in raw if isinstance(item, str))
        return tuple(dict.fromkeys(origin for origin in origins if origin))

    @model_validator(mode="after")
    def _check_positive_limits(self) -> "Settings":
        """Reject zero or negative queue/window sizes.

        キュー件数や履歴ウィンドウが 0 以下だと API が常に空を返すため、
        起動時に設定ミスとして検出する。
        """

        for name in ("review_queue_limit", "recent_window_hours", "chat_history_window"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer")
        return self


settings = Settings()
