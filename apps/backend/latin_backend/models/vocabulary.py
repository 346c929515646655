from __future__ import annotations

from pydantic import BaseModel, Field


class VocabWord(BaseModel):
    """One Latin headword with its English meaning."""

    id: int
    list: int = Field(description="Vocabulary list number / 語彙リスト番号")
    latin: str
    english: str


class ExampleSentence(BaseModel):
    id: int
    latin_sentence: str
    english_translation: str
    clc_book: int | None = Field(
        default=None, description="Cambridge Latin Course book / 出典の教科書巻数"
    )


class VocabList(BaseModel):
    list_number: int
    word_count: int


class VocabListsResponse(BaseModel):
    lists: list[VocabList]


class VocabListWordsResponse(BaseModel):
    list_number: int
    words: list[VocabWord]


class VocabDetailResponse(BaseModel):
    word: VocabWord
    examples: list[ExampleSentence] = Field(default_factory=list)


class ClozeItem(BaseModel):
    """Example sentence with the headword blanked out.

    穴埋めモード用。見出し語が例文中に現れない例文は含めない。
    """

    example_id: int
    sentence: str = Field(description="Sentence with the word replaced by _____ / 空欄化した例文")
    english_translation: str


class ClozeResponse(BaseModel):
    vocab_id: int
    items: list[ClozeItem]


class ChoicesResponse(BaseModel):
    vocab_id: int
    latin: str
    options: list[str] = Field(description="Shuffled English meanings / シャッフル済みの選択肢")
