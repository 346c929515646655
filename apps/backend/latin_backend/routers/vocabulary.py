from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import get_current_user
from ..grading import build_choices, build_cloze
from ..models.vocabulary import (
    ChoicesResponse,
    ClozeItem,
    ClozeResponse,
    ExampleSentence,
    VocabDetailResponse,
    VocabList,
    VocabListsResponse,
    VocabListWordsResponse,
    VocabWord,
)
from ..store import store

router = APIRouter(tags=["vocabulary"])


def _require_word(vocab_id: int) -> dict:
    word = store.get_word(vocab_id)
    if word is None:
        raise HTTPException(status_code=404, detail=f"Vocabulary {vocab_id} not found")
    return word


@router.get("/lists", response_model=VocabListsResponse)
def list_vocab_lists() -> VocabListsResponse:
    """語彙リスト番号と語数の一覧。"""
    return VocabListsResponse(
        lists=[VocabList(list_number=n, word_count=c) for n, c in store.list_lists()]
    )


@router.get("/lists/{list_number}", response_model=VocabListWordsResponse)
def list_vocab_words(
    list_number: int,
    only_new: bool = Query(
        default=False, description="Only words never answered / 未回答の語のみ"
    ),
    user_id: str = Depends(get_current_user),
) -> VocabListWordsResponse:
    if only_new:
        words = store.list_new_words(user_id, list_number)
    else:
        words = store.list_words(list_number)
    if not words and not any(n == list_number for n, _ in store.list_lists()):
        raise HTTPException(status_code=404, detail=f"Vocabulary list {list_number} not found")
    return VocabListWordsResponse(
        list_number=list_number, words=[VocabWord(**w) for w in words]
    )


@router.get("/{vocab_id}", response_model=VocabDetailResponse)
def get_vocab_word(vocab_id: int) -> VocabDetailResponse:
    word = _require_word(vocab_id)
    examples = [
        ExampleSentence(
            id=e["id"],
            latin_sentence=e["latin_sentence"],
            english_translation=e["english_translation"],
            clc_book=e["clc_book"],
        )
        for e in store.list_example_sentences(vocab_id)
    ]
    return VocabDetailResponse(word=VocabWord(**word), examples=examples)


@router.get("/{vocab_id}/cloze", response_model=ClozeResponse)
def get_cloze_items(vocab_id: int) -> ClozeResponse:
    """例文中の見出し語を空欄にした穴埋め問題を返す。"""
    word = _require_word(vocab_id)
    items: list[ClozeItem] = []
    for example in store.list_example_sentences(vocab_id):
        blanked = build_cloze(example["latin_sentence"], word["latin"])
        if blanked is None:
            continue
        items.append(
            ClozeItem(
                example_id=example["id"],
                sentence=blanked,
                english_translation=example["english_translation"],
            )
        )
    return ClozeResponse(vocab_id=vocab_id, items=items)


@router.get("/{vocab_id}/choices", response_model=ChoicesResponse)
def get_choices(vocab_id: int) -> ChoicesResponse:
    """正解の英訳と同じリストから選んだ誤答を混ぜた 4 択を返す。"""
    word = _require_word(vocab_id)
    pool = [w["english"] for w in store.list_words(word["list"]) if w["id"] != vocab_id]
    return ChoicesResponse(
        vocab_id=vocab_id,
        latin=word["latin"],
        options=build_choices(word["english"], pool),
    )
