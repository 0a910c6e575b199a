"""Static catalog of the models the client knows how to reach."""

from typing import Dict, List, Optional

from .models import ModelDescriptor

DEFAULT_MODEL_ID = "gemini-2.5-flash-preview-05-20"

REASONING_PREFIXES = ("o1", "o3", "o4")


def _models(provider: str, rows, max_tokens: int = 4096) -> List[ModelDescriptor]:
    return [
        ModelDescriptor(
            id=model_id,
            provider=provider,
            display_name=name,
            max_tokens=row_max or max_tokens,
            category=category,
        )
        for model_id, name, category, row_max in rows
    ]


GOOGLE_MODELS = _models("google", [
    ("gemini-2.5-flash-preview-05-20", "Gemini 2.5 Flash Preview", "flagship", None),
    ("gemini-2.5-pro-preview-06-05", "Gemini 2.5 Pro Preview", "flagship", None),
    ("gemini-2.0-flash", "Gemini 2.0 Flash", "fast", None),
    ("gemini-2.0-flash-lite", "Gemini 2.0 Flash Lite", "efficient", None),
    ("gemini-1.5-pro", "Gemini 1.5 Pro", "flagship", None),
    ("gemini-1.5-flash", "Gemini 1.5 Flash", "fast", None),
    ("gemini-1.5-flash-8b", "Gemini 1.5 Flash 8B", "efficient", None),
], max_tokens=8192)

OPENAI_MODELS = _models("openai", [
    ("gpt-4.5-preview", "GPT-4.5 Preview", "flagship", None),
    ("gpt-4.1", "GPT-4.1", "flagship", None),
    ("gpt-4.1-mini", "GPT-4.1 Mini", "efficient", None),
    ("gpt-4.1-nano", "GPT-4.1 Nano", "efficient", None),
    ("gpt-4o", "GPT-4o", "flagship", None),
    ("gpt-4o-mini", "GPT-4o Mini", "fast", None),
    ("o3", "o3", "specialized", 8192),
    ("o3-mini", "o3 Mini", "specialized", 8192),
    ("o4-mini", "o4 Mini", "specialized", 8192),
    ("o1", "o1", "specialized", 8192),
    ("o1-mini", "o1 Mini", "specialized", 8192),
    ("gpt-4-turbo", "GPT-4 Turbo", "flagship", None),
    ("gpt-4", "GPT-4", "flagship", None),
    ("gpt-3.5-turbo", "GPT-3.5 Turbo", "efficient", None),
])

ANTHROPIC_MODELS = _models("anthropic", [
    ("claude-opus-4-20250514", "Claude 4 Opus", "flagship", None),
    ("claude-sonnet-4-20250514", "Claude 4 Sonnet", "flagship", None),
    ("claude-3-7-sonnet-latest", "Claude 3.7 Sonnet (Latest)", "flagship", None),
    ("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet (Latest)", "flagship", None),
    ("claude-3-5-haiku-latest", "Claude 3.5 Haiku (Latest)", "fast", None),
    ("claude-3-opus-latest", "Claude 3 Opus (Latest)", "flagship", None),
    ("claude-3-haiku-20240307", "Claude 3 Haiku", "efficient", None),
])

DEEPSEEK_MODELS = _models("deepseek", [
    ("deepseek-chat", "DeepSeek Chat (V3-0324)", "flagship", 8192),
    ("deepseek-reasoner", "DeepSeek Reasoner (R1-0528)", "specialized", 64000),
])

ALL_MODELS: List[ModelDescriptor] = [
    *GOOGLE_MODELS,
    *OPENAI_MODELS,
    *ANTHROPIC_MODELS,
    *DEEPSEEK_MODELS,
]

_BY_ID: Dict[str, ModelDescriptor] = {m.id: m for m in ALL_MODELS}


def get_model_by_id(model_id: str) -> Optional[ModelDescriptor]:
    return _BY_ID.get(model_id)


def is_reasoning_model(model_id: str) -> bool:
    """OpenAI o-series models answer in one piece and reject sampling params."""
    return model_id.startswith(REASONING_PREFIXES)


def model_type(model_id: str) -> str:
    """Coarse model family label recorded in message metadata."""
    if is_reasoning_model(model_id):
        return "reasoning"
    for marker, label in (
        ("audio", "audio"),
        ("search", "search"),
        ("realtime", "realtime"),
        ("4.5", "advanced"),
        ("4.1", "latest"),
        ("4o", "multimodal"),
        ("gpt-4", "flagship"),
        ("3.5", "efficient"),
    ):
        if marker in model_id:
            return label
    return "standard"
