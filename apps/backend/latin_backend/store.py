from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from . import srs
from .config import settings
from .logging import logger


AI_PROVIDER_IDS: tuple[str, ...] = ("openai", "anthropic", "google")

class NotFound(LookupError):
    """A vocabulary word or study session the caller referenced does not exist."""


_PROGRESS_COLUMNS = (
    "user_id, vocab_id, ease_factor, interval, repetitions, status, next_review, "
    "last_review, correct_count, incorrect_count, created_at, updated_at"
)


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _iso(dt: datetime) -> str:
    # 固定桁にしておくと SQLite 上の文字列比較がそのまま時刻比較になる
    return _utc(dt).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class ReviewOutcome:
    """Result of one persisted answer: the schedule plus updated counters."""

    vocab_id: int
    quality: int
    correct: bool
    result: srs.ScheduleResult
    correct_count: int
    incorrect_count: int
    xp_total: int
    reviewed_at: datetime


class AppSQLiteStore:
    """SQLite-backed persistence layer for vocabulary, progress and profiles."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_dirs()
        self._init_db()

    # --- low-level helpers ---
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, timeout=10.0, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        with conn:  # autocommit on pragma
            conn.execute("pragma journal_mode=WAL;")
            conn.execute("pragma foreign_keys=ON;")
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction that holds the lock from the first read.

        BEGIN IMMEDIATE で読み取り前に書き込みロックを確保し、同じ語への
        読み取り→計算→書き込みが他の書き手と交錯しないようにする。
        """

        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    def _ensure_dirs(self) -> None:
        p = Path(self.db_path)
        if p.parent and not p.parent.exists():
            p.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _normalize_non_negative_int(value: Any) -> int:
        """入力を非負整数に正規化する（不正値/負値は0）。"""

        try:
            ivalue = int(value)
        except (TypeError, ValueError):
            return 0
        return ivalue if ivalue >= 0 else 0

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn:
                self._ensure_vocabulary_tables(conn)
                self._ensure_progress_table(conn)
                self._ensure_profiles_table(conn)
                self._ensure_study_sessions_table(conn)
                self._ensure_ai_tables(conn)

    def _ensure_vocabulary_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS vocabulary (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                list INTEGER NOT NULL,
                latin TEXT NOT NULL,
                english TEXT NOT NULL
            );
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_vocabulary_list ON vocabulary(list);")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS example_sentences (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                vocab_id INTEGER NOT NULL,
                latin_sentence TEXT NOT NULL,
                english_translation TEXT NOT NULL,
                clc_book INTEGER,
                FOREIGN KEY(vocab_id) REFERENCES vocabulary(id) ON DELETE CASCADE
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_examples_vocab ON example_sentences(vocab_id);"
        )

    def _ensure_progress_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_vocab_progress (
                user_id TEXT NOT NULL,
                vocab_id INTEGER NOT NULL,
                ease_factor REAL NOT NULL DEFAULT 2.5,
                interval INTEGER NOT NULL DEFAULT 0,
                repetitions INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'new',
                next_review TEXT NOT NULL,
                last_review TEXT,
                correct_count INTEGER NOT NULL DEFAULT 0,
                incorrect_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(user_id, vocab_id),
                FOREIGN KEY(vocab_id) REFERENCES vocabulary(id) ON DELETE CASCADE
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_progress_due ON user_vocab_progress(user_id, next_review);"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_progress_last ON user_vocab_progress(user_id, last_review);"
        )

    def _ensure_profiles_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                xp_points INTEGER NOT NULL DEFAULT 0,
                daily_goal INTEGER NOT NULL DEFAULT 20,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            """
        )

    def _ensure_study_sessions_table(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS study_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                list_number INTEGER,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                words_reviewed INTEGER NOT NULL DEFAULT 0,
                correct_count INTEGER NOT NULL DEFAULT 0,
                xp_earned INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_sessions_user ON study_sessions(user_id, started_at);"
        )

    def _ensure_ai_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_ai_settings (
                user_id TEXT PRIMARY KEY,
                default_provider TEXT NOT NULL DEFAULT 'openai',
                openai_api_key TEXT,
                openai_model TEXT,
                anthropic_api_key TEXT,
                anthropic_model TEXT,
                google_api_key TEXT,
                google_model TEXT,
                ai_chat_enabled INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_chat_history (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                provider_used TEXT NOT NULL,
                model_used TEXT NOT NULL,
                messages TEXT NOT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_user ON ai_chat_history(user_id, created_at);"
        )

    @staticmethod
    def _word_from_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": int(row["id"]),
            "list": int(row["list"]),
            "latin": str(row["latin"]),
            "english": str(row["english"]),
        }

    @staticmethod
    def _progress_from_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "user_id": str(row["user_id"]),
            "vocab_id": int(row["vocab_id"]),
            "ease_factor": float(row["ease_factor"]),
            "interval": int(row["interval"]),
            "repetitions": int(row["repetitions"]),
            "status": str(row["status"]),
            "next_review": datetime.fromisoformat(row["next_review"]),
            "last_review": (
                datetime.fromisoformat(row["last_review"]) if row["last_review"] else None
            ),
            "correct_count": int(row["correct_count"]),
            "incorrect_count": int(row["incorrect_count"]),
        }

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": str(row["id"]),
            "user_id": str(row["user_id"]),
            "mode": str(row["mode"]),
            "list_number": row["list_number"],
            "started_at": datetime.fromisoformat(row["started_at"]),
            "ended_at": datetime.fromisoformat(row["ended_at"]) if row["ended_at"] else None,
            "words_reviewed": int(row["words_reviewed"]),
            "correct_count": int(row["correct_count"]),
            "xp_earned": int(row["xp_earned"]),
        }

    # --- vocabulary ---
    def add_word(self, list_number: int, latin: str, english: str) -> int:
        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    "INSERT INTO vocabulary(list, latin, english) VALUES (?, ?, ?);",
                    (int(list_number), latin.strip(), english.strip()),
                )
                return int(cur.lastrowid)

    def add_words_bulk(self, entries: Sequence[dict[str, Any]]) -> int:
        """Insert words and their example sentences in one transaction.

        ``entries`` は ``{"list", "latin", "english", "examples": [...]}`` の並び。
        途中で失敗した場合は全件ロールバックし、語彙が半端に残らないようにする。
        """

        with self._immediate() as conn:
            for entry in entries:
                cur = conn.execute(
                    "INSERT INTO vocabulary(list, latin, english) VALUES (?, ?, ?);",
                    (int(entry["list"]), entry["latin"].strip(), entry["english"].strip()),
                )
                vocab_id = int(cur.lastrowid)
                for example in entry.get("examples") or ():
                    conn.execute(
                        """
                        INSERT INTO example_sentences(vocab_id, latin_sentence, english_translation, clc_book)
                        VALUES (?, ?, ?, ?);
                        """,
                        (
                            vocab_id,
                            example["latin_sentence"],
                            example["english_translation"],
                            example.get("clc_book"),
                        ),
                    )
        return len(entries)

    def list_lists(self) -> list[tuple[int, int]]:
        """Return (list_number, word_count) pairs ordered by list number."""

        with self._conn() as conn:
            cur = conn.execute(
                "SELECT list, COUNT(1) AS c FROM vocabulary GROUP BY list ORDER BY list ASC;"
            )
            return [(int(row["list"]), int(row["c"])) for row in cur.fetchall()]

    def list_words(self, list_number: Optional[int] = None) -> list[dict[str, Any]]:
        with self._conn() as conn:
            if list_number is None:
                cur = conn.execute("SELECT id, list, latin, english FROM vocabulary ORDER BY id ASC;")
            else:
                cur = conn.execute(
                    "SELECT id, list, latin, english FROM vocabulary WHERE list = ? ORDER BY id ASC;",
                    (int(list_number),),
                )
            return [self._word_from_row(row) for row in cur.fetchall()]

    def get_word(self, vocab_id: int) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT id, list, latin, english FROM vocabulary WHERE id = ?;",
                (int(vocab_id),),
            ).fetchone()
        return None if row is None else self._word_from_row(row)

    def add_example_sentence(
        self,
        vocab_id: int,
        latin_sentence: str,
        english_translation: str,
        clc_book: Optional[int] = None,
    ) -> int:
        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    """
                    INSERT INTO example_sentences(vocab_id, latin_sentence, english_translation, clc_book)
                    VALUES (?, ?, ?, ?);
                    """,
                    (int(vocab_id), latin_sentence, english_translation, clc_book),
                )
                return int(cur.lastrowid)

    def list_example_sentences(self, vocab_id: int) -> list[dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.execute(
                """
                SELECT id, vocab_id, latin_sentence, english_translation, clc_book
                FROM example_sentences WHERE vocab_id = ? ORDER BY id ASC;
                """,
                (int(vocab_id),),
            )
            return [
                {
                    "id": int(row["id"]),
                    "vocab_id": int(row["vocab_id"]),
                    "latin_sentence": str(row["latin_sentence"]),
                    "english_translation": str(row["english_translation"]),
                    "clc_book": row["clc_book"],
                }
                for row in cur.fetchall()
            ]

    # --- progress ---
    def get_progress(self, user_id: str, vocab_id: int) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_PROGRESS_COLUMNS} FROM user_vocab_progress WHERE user_id = ? AND vocab_id = ?;",
                (user_id, int(vocab_id)),
            ).fetchone()
        return None if row is None else self._progress_from_row(row)

    def _list_progress_with_words(
        self, sql_where: str, params: Sequence[Any], order_by: str, limit: int
    ) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                SELECT p.user_id, p.vocab_id, p.ease_factor, p.interval, p.repetitions, p.status,
                       p.next_review, p.last_review, p.correct_count, p.incorrect_count,
                       v.id, v.list, v.latin, v.english
                FROM user_vocab_progress p
                JOIN vocabulary v ON v.id = p.vocab_id
                WHERE {sql_where}
                ORDER BY {order_by}
                LIMIT ?;
                """,
                (*params, int(limit)),
            )
            return [
                (self._progress_from_row(row), self._word_from_row(row))
                for row in cur.fetchall()
            ]

    def list_due(
        self, user_id: str, now: datetime, limit: int = 50
    ) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        """next_review が now 以前の語を古い順に返す。"""

        return self._list_progress_with_words(
            "p.user_id = ? AND p.next_review <= ?",
            (user_id, _iso(now)),
            "p.next_review ASC, p.vocab_id ASC",
            limit,
        )

    def list_recent(
        self, user_id: str, since: datetime, limit: int = 50
    ) -> list[tuple[dict[str, Any], dict[str, Any]]]:
        """since 以降にレビューした語を新しい順に返す。"""

        return self._list_progress_with_words(
            "p.user_id = ? AND p.last_review IS NOT NULL AND p.last_review >= ?",
            (user_id, _iso(since)),
            "p.last_review DESC, p.vocab_id ASC",
            limit,
        )

    def list_new_words(self, user_id: str, list_number: int) -> list[dict[str, Any]]:
        """List words in a list that the user has never answered."""

        with self._conn() as conn:
            cur = conn.execute(
                """
                SELECT v.id, v.list, v.latin, v.english
                FROM vocabulary v
                LEFT JOIN user_vocab_progress p ON p.vocab_id = v.id AND p.user_id = ?
                WHERE v.list = ? AND p.vocab_id IS NULL
                ORDER BY v.id ASC;
                """,
                (user_id, int(list_number)),
            )
            return [self._word_from_row(row) for row in cur.fetchall()]

    def apply_review(
        self,
        user_id: str,
        vocab_id: int,
        quality: int,
        *,
        now: datetime,
        session_id: Optional[str] = None,
    ) -> ReviewOutcome:
        """Read prior state, schedule, and persist the answer in one transaction.

        - 進捗行が無ければ既定値（初回回答）として扱い作成する
        - 進捗・正誤カウンタ・プロフィールXP・学習セッション集計をまとめて更新
        - 途中で例外が出た場合はロールバックして再送出する
        """

        reviewed_at = _utc(now)
        stamp = _iso(reviewed_at)
        with self._immediate() as conn:
            word = conn.execute(
                "SELECT id FROM vocabulary WHERE id = ?;", (int(vocab_id),)
            ).fetchone()
            if word is None:
                raise NotFound(f"vocabulary {vocab_id} not found")

            if session_id is not None:
                session_row = conn.execute(
                    "SELECT id FROM study_sessions WHERE id = ? AND user_id = ?;",
                    (session_id, user_id),
                ).fetchone()
                if session_row is None:
                    raise NotFound(f"study session {session_id} not found")

            row = conn.execute(
                f"SELECT {_PROGRESS_COLUMNS} FROM user_vocab_progress WHERE user_id = ? AND vocab_id = ?;",
                (user_id, int(vocab_id)),
            ).fetchone()
            prior: Optional[srs.ReviewState] = None
            correct_count = incorrect_count = 0
            if row is not None:
                prior = srs.coerce_state(
                    {
                        "ease_factor": float(row["ease_factor"]),
                        "interval": int(row["interval"]),
                        "repetitions": int(row["repetitions"]),
                    }
                )
                correct_count = self._normalize_non_negative_int(row["correct_count"])
                incorrect_count = self._normalize_non_negative_int(row["incorrect_count"])

            result = srs.schedule(quality, prior, now=reviewed_at)
            correct = quality >= 3
            if correct:
                correct_count += 1
            else:
                incorrect_count += 1

            conn.execute(
                """
                INSERT INTO user_vocab_progress (
                    user_id, vocab_id, ease_factor, interval, repetitions, status,
                    next_review, last_review, correct_count, incorrect_count, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, vocab_id) DO UPDATE SET
                    ease_factor = excluded.ease_factor,
                    interval = excluded.interval,
                    repetitions = excluded.repetitions,
                    status = excluded.status,
                    next_review = excluded.next_review,
                    last_review = excluded.last_review,
                    correct_count = excluded.correct_count,
                    incorrect_count = excluded.incorrect_count,
                    updated_at = excluded.updated_at;
                """,
                (
                    user_id,
                    int(vocab_id),
                    result.ease_factor,
                    result.interval,
                    result.repetitions,
                    result.status,
                    _iso(result.next_review_at),
                    stamp,
                    correct_count,
                    incorrect_count,
                    stamp,
                    stamp,
                ),
            )
            xp_total = self._increment_xp(conn, user_id, result.xp, stamp)
            if session_id is not None:
                conn.execute(
                    """
                    UPDATE study_sessions
                    SET words_reviewed = words_reviewed + 1,
                        correct_count = correct_count + ?,
                        xp_earned = xp_earned + ?
                    WHERE id = ?;
                    """,
                    (1 if correct else 0, result.xp, session_id),
                )

        logger.info(
            "review_applied",
            user_id=user_id,
            vocab_id=int(vocab_id),
            quality=quality,
            status=result.status,
            interval=result.interval,
            xp=result.xp,
        )
        return ReviewOutcome(
            vocab_id=int(vocab_id),
            quality=quality,
            correct=correct,
            result=result,
            correct_count=correct_count,
            incorrect_count=incorrect_count,
            xp_total=xp_total,
            reviewed_at=reviewed_at,
        )

    def progress_stats(self, user_id: str, now: datetime) -> dict[str, Any]:
        """Counts per status plus due-now and reviewed-today totals.

        - reviewed_today: 当日 00:00 UTC 以降にレビューされた語数
        """

        current = _utc(now)
        today_start = datetime(current.year, current.month, current.day, tzinfo=UTC)
        by_status = {"new": 0, "learning": 0, "review": 0, "mastered": 0}
        with self._conn() as conn:
            cur = conn.execute(
                "SELECT status, COUNT(1) AS c FROM user_vocab_progress WHERE user_id = ? GROUP BY status;",
                (user_id,),
            )
            for row in cur.fetchall():
                by_status[str(row["status"])] = int(row["c"])
            due_now = int(
                conn.execute(
                    "SELECT COUNT(1) AS c FROM user_vocab_progress WHERE user_id = ? AND next_review <= ?;",
                    (user_id, _iso(current)),
                ).fetchone()["c"]
            )
            reviewed_today = int(
                conn.execute(
                    "SELECT COUNT(1) AS c FROM user_vocab_progress WHERE user_id = ? AND last_review >= ?;",
                    (user_id, _iso(today_start)),
                ).fetchone()["c"]
            )
            total_words = int(conn.execute("SELECT COUNT(1) AS c FROM vocabulary;").fetchone()["c"])
        started = sum(by_status.values())
        by_status["new"] += max(0, total_words - started)
        return {
            "by_status": by_status,
            "due_now": due_now,
            "reviewed_today": reviewed_today,
        }

    # --- profiles ---
    def _ensure_profile(self, conn: sqlite3.Connection, user_id: str, stamp: str) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO profiles(user_id, xp_points, daily_goal, created_at, updated_at)
            VALUES (?, 0, ?, ?, ?);
            """,
            (user_id, settings.default_daily_goal, stamp, stamp),
        )

    def _increment_xp(
        self, conn: sqlite3.Connection, user_id: str, amount: int, stamp: str
    ) -> int:
        self._ensure_profile(conn, user_id, stamp)
        conn.execute(
            "UPDATE profiles SET xp_points = xp_points + ?, updated_at = ? WHERE user_id = ?;",
            (self._normalize_non_negative_int(amount), stamp, user_id),
        )
        row = conn.execute(
            "SELECT xp_points FROM profiles WHERE user_id = ?;", (user_id,)
        ).fetchone()
        return int(row["xp_points"])

    def increment_xp(
        self,
        user_id: str,
        amount: int,
        *,
        now: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """XP を加算し、加算後の合計を返す。負値は 0 として扱う。"""

        stamp = _iso(now or datetime.now(UTC))
        with self._immediate() as conn:
            if session_id is not None:
                updated = conn.execute(
                    "UPDATE study_sessions SET xp_earned = xp_earned + ? WHERE id = ? AND user_id = ?;",
                    (self._normalize_non_negative_int(amount), session_id, user_id),
                )
                if updated.rowcount == 0:
                    raise NotFound(f"study session {session_id} not found")
            return self._increment_xp(conn, user_id, amount, stamp)

    def get_profile(self, user_id: str) -> dict[str, Any]:
        stamp = _iso(datetime.now(UTC))
        with self._conn() as conn:
            with conn:
                self._ensure_profile(conn, user_id, stamp)
            row = conn.execute(
                "SELECT user_id, xp_points, daily_goal FROM profiles WHERE user_id = ?;",
                (user_id,),
            ).fetchone()
        return {
            "user_id": str(row["user_id"]),
            "xp_points": int(row["xp_points"]),
            "daily_goal": int(row["daily_goal"]),
        }

    def set_daily_goal(self, user_id: str, daily_goal: int) -> dict[str, Any]:
        stamp = _iso(datetime.now(UTC))
        with self._conn() as conn:
            with conn:
                self._ensure_profile(conn, user_id, stamp)
                conn.execute(
                    "UPDATE profiles SET daily_goal = ?, updated_at = ? WHERE user_id = ?;",
                    (max(1, int(daily_goal)), stamp, user_id),
                )
        return self.get_profile(user_id)

    # --- study sessions ---
    def start_session(
        self,
        user_id: str,
        mode: str,
        list_number: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        session_id = uuid.uuid4().hex
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO study_sessions(id, user_id, mode, list_number, started_at)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    (session_id, user_id, mode, list_number, _iso(now or datetime.now(UTC))),
                )
        session = self.get_session(user_id, session_id)
        if session is None:  # pragma: no cover - defensive fallback
            raise RuntimeError("failed to persist study session")
        return session

    def get_session(self, user_id: str, session_id: str) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM study_sessions WHERE id = ? AND user_id = ?;",
                (session_id, user_id),
            ).fetchone()
        return None if row is None else self._session_from_row(row)

    def finish_session(
        self, user_id: str, session_id: str, *, now: Optional[datetime] = None
    ) -> Optional[dict[str, Any]]:
        """ended_at を記録する。終了済みのセッションは最初の終了時刻を保持する。"""

        with self._conn() as conn:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE study_sessions SET ended_at = COALESCE(ended_at, ?)
                    WHERE id = ? AND user_id = ?;
                    """,
                    (_iso(now or datetime.now(UTC)), session_id, user_id),
                )
                if cur.rowcount == 0:
                    return None
        return self.get_session(user_id, session_id)

    # --- AI settings & chat history ---
    def get_ai_settings(self, user_id: str) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM user_ai_settings WHERE user_id = ?;", (user_id,)
            ).fetchone()
        if row is None:
            return None
        data: dict[str, Any] = {
            "user_id": str(row["user_id"]),
            "default_provider": str(row["default_provider"]),
            "ai_chat_enabled": bool(row["ai_chat_enabled"]),
        }
        for provider in AI_PROVIDER_IDS:
            data[f"{provider}_api_key"] = row[f"{provider}_api_key"]
            data[f"{provider}_model"] = row[f"{provider}_model"]
        return data

    def upsert_ai_settings(self, user_id: str, **fields: Any) -> dict[str, Any]:
        """Insert or update AI settings; unknown field names are rejected."""

        allowed = {"default_provider", "ai_chat_enabled"} | {
            f"{p}_{suffix}" for p in AI_PROVIDER_IDS for suffix in ("api_key", "model")
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unknown AI settings fields: {sorted(unknown)}")
        stamp = _iso(datetime.now(UTC))
        with self._conn() as conn:
            with conn:
                conn.execute(
                    "INSERT OR IGNORE INTO user_ai_settings(user_id, updated_at) VALUES (?, ?);",
                    (user_id, stamp),
                )
                for name, value in fields.items():
                    if name == "ai_chat_enabled":
                        value = 1 if value else 0
                    conn.execute(
                        f"UPDATE user_ai_settings SET {name} = ?, updated_at = ? WHERE user_id = ?;",
                        (value, stamp, user_id),
                    )
        saved = self.get_ai_settings(user_id)
        if saved is None:  # pragma: no cover - defensive fallback
            raise RuntimeError("failed to persist AI settings")
        return saved

    def append_chat_history(
        self,
        user_id: str,
        *,
        provider: str,
        model: str,
        messages: list[dict[str, str]],
        tokens_used: int = 0,
        now: Optional[datetime] = None,
    ) -> str:
        entry_id = uuid.uuid4().hex
        with self._conn() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO ai_chat_history(id, user_id, provider_used, model_used, messages, tokens_used, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        entry_id,
                        user_id,
                        provider,
                        model,
                        json.dumps(messages, ensure_ascii=False),
                        self._normalize_non_negative_int(tokens_used),
                        _iso(now or datetime.now(UTC)),
                    ),
                )
        return entry_id

    def list_chat_history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.execute(
                """
                SELECT id, provider_used, model_used, messages, tokens_used, created_at
                FROM ai_chat_history WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?;
                """,
                (user_id, int(limit)),
            )
            return [
                {
                    "id": str(row["id"]),
                    "provider_used": str(row["provider_used"]),
                    "model_used": str(row["model_used"]),
                    "messages": json.loads(row["messages"]),
                    "tokens_used": int(row["tokens_used"]),
                    "created_at": datetime.fromisoformat(row["created_at"]),
                }
                for row in cur.fetchall()
            ]


def recent_cutoff(now: datetime) -> datetime:
    return _utc(now) - timedelta(hours=settings.recent_window_hours)


store = AppSQLiteStore(db_path=settings.latin_db_path)
