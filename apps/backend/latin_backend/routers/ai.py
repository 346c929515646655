from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import get_current_user
from ..flows.ai_chat import ChatFlow
from ..logging import logger
from ..models.ai import (
    AISettingsResponse,
    AISettingsUpdate,
    ChatHistoryEntry,
    ChatHistoryResponse,
    ChatRequest,
    ChatResponse,
    ModelInfo,
    ProviderInfo,
    ProvidersResponse,
    ProviderSettingsView,
    ValidateKeyRequest,
    ValidateKeyResponse,
)
from ..providers import AI_PROVIDERS, get_chat_client, validate_api_key_format
from ..store import AI_PROVIDER_IDS, store

router = APIRouter(tags=["ai"])
chat_flow = ChatFlow(store)


def _key_hint(api_key: str | None) -> str | None:
    """保存済みキーを画面表示用に末尾4文字だけ残して隠す。"""
    if not api_key:
        return None
    if len(api_key) <= 8:
        return "***"
    return f"{api_key[:3]}...{api_key[-4:]}"


def _settings_view(data: dict | None) -> AISettingsResponse:
    data = data or {}
    providers = {}
    for provider_id in AI_PROVIDER_IDS:
        api_key = data.get(f"{provider_id}_api_key")
        providers[provider_id] = ProviderSettingsView(
            configured=bool(api_key),
            api_key_hint=_key_hint(api_key),
            model=data.get(f"{provider_id}_model") or AI_PROVIDERS[provider_id].default_model,
        )
    return AISettingsResponse(
        default_provider=data.get("default_provider", "openai"),
        ai_chat_enabled=data.get("ai_chat_enabled", True),
        providers=providers,
    )


@router.get("/providers", response_model=ProvidersResponse)
def list_providers() -> ProvidersResponse:
    return ProvidersResponse(
        providers=[
            ProviderInfo(
                id=p.id,
                name=p.name,
                description=p.description,
                api_key_placeholder=p.api_key_placeholder,
                docs_url=p.docs_url,
                default_model=p.default_model,
                models=[
                    ModelInfo(
                        id=m.id,
                        name=m.name,
                        description=m.description,
                        input_cost_per_million=m.input_cost_per_million,
                        output_cost_per_million=m.output_cost_per_million,
                        context_window=m.context_window,
                    )
                    for m in p.models
                ],
            )
            for p in AI_PROVIDERS.values()
        ]
    )


@router.post("/validate-key", response_model=ValidateKeyResponse)
def validate_key(
    req: ValidateKeyRequest, _: str = Depends(get_current_user)
) -> ValidateKeyResponse:
    """キー形式を検査する。check_remote=true なら形式が正しいときだけプロバイダへ問い合わせる。"""
    valid = validate_api_key_format(req.provider, req.api_key)
    if not (valid and req.check_remote):
        return ValidateKeyResponse(provider=req.provider, valid=valid)
    client = get_chat_client(
        req.provider, req.api_key.strip(), AI_PROVIDERS[req.provider].default_model
    )
    return ValidateKeyResponse(
        provider=req.provider, valid=client.verify_key(), checked_remote=True
    )


@router.get("/settings", response_model=AISettingsResponse)
def get_ai_settings(user_id: str = Depends(get_current_user)) -> AISettingsResponse:
    return _settings_view(store.get_ai_settings(user_id))


@router.put("/settings", response_model=AISettingsResponse)
def update_ai_settings(
    req: AISettingsUpdate, user_id: str = Depends(get_current_user)
) -> AISettingsResponse:
    """AI 設定を部分更新する。

    - 未指定の項目は変更しない
    - 空文字の API キーは削除
    - 形式が不正な API キーは 422
    - 未知のモデル名は拒否しない（プロバイダ側の新モデルに追随するため）
    """
    fields = req.model_dump(exclude_unset=True, exclude_none=True)
    for provider_id in AI_PROVIDER_IDS:
        name = f"{provider_id}_api_key"
        if name not in fields:
            continue
        key = fields[name].strip()
        if not key:
            fields[name] = None
        elif not validate_api_key_format(provider_id, key):
            raise HTTPException(
                status_code=422,
                detail=f"Invalid API key format for {AI_PROVIDERS[provider_id].name}",
            )
        else:
            fields[name] = key
    saved = store.upsert_ai_settings(user_id, **fields)
    logger.info(
        "ai_settings_updated",
        user_id=user_id,
        fields=sorted(fields),
    )
    return _settings_view(saved)


@router.post("/chat", response_model=ChatResponse)
def chat(req: ChatRequest, user_id: str = Depends(get_current_user)) -> ChatResponse:
    try:
        result = chat_flow.send(
            user_id,
            req.message,
            history=[m.model_dump() for m in req.history],
            provider=req.provider,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ChatResponse(
        message=result.message,
        provider=result.provider,
        model=result.model,
        tokens_used=result.tokens_used,
    )


@router.get("/history", response_model=ChatHistoryResponse)
def get_chat_history(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
) -> ChatHistoryResponse:
    return ChatHistoryResponse(
        items=[ChatHistoryEntry(**entry) for entry in store.list_chat_history(user_id, limit)]
    )
