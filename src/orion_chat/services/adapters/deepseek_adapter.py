"""DeepSeek adapter over its OpenAI-compatible endpoint."""

from .openai_adapter import OpenAIAdapter

DEEPSEEK_BASE_URL = "https://api.deepseek.com"


class DeepSeekAdapter(OpenAIAdapter):
    provider = "deepseek"
    base_url = DEEPSEEK_BASE_URL
