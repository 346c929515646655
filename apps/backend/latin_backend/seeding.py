"""Load vocabulary lists from JSONL into an empty store.

1 行 1 語の JSONL を想定する::

    {"list": 1, "latin": "amicus", "english": "friend",
     "examples": [{"latin_sentence": "amicus venit.", "english_translation": "The friend comes.", "clc_book": 1}]}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .logging import logger
from .store import AppSQLiteStore


def _text(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected a non-empty string")
    return value


def _parse_entry(line: str) -> dict[str, Any]:
    entry = json.loads(line)
    examples = []
    for example in entry.get("examples") or []:
        clc_book = example.get("clc_book")
        examples.append(
            {
                "latin_sentence": _text(example["latin_sentence"]),
                "english_translation": _text(example["english_translation"]),
                "clc_book": None if clc_book is None else int(clc_book),
            }
        )
    return {
        "list": int(entry["list"]),
        "latin": _text(entry["latin"]),
        "english": _text(entry["english"]),
        "examples": examples,
    }


def seed_from_jsonl(store: AppSQLiteStore, path: Path) -> int:
    """Insert every word (and its example sentences) from ``path``.

    語彙テーブルに 1 件でも語があれば何もしない。ファイル全体を先に検証し、
    不正な行があれば行番号付きの ValueError で中断して何も投入しない。
    戻り値は投入した語数。
    """

    if store.list_lists():
        return 0
    entries: list[dict[str, Any]] = []
    with path.open(encoding="utf-8") as fh:
        for lineno, raw in enumerate(fh, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                entries.append(_parse_entry(line))
            except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as exc:
                raise ValueError(f"{path}:{lineno}: invalid vocabulary entry") from exc
    count = store.add_words_bulk(entries)
    logger.info("vocabulary_seeded", path=str(path), words=count)
    return count
