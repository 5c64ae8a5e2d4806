"""Static catalog of supported LLM providers and models.

Served verbatim on /llm-providers and used to validate requests before any
provider is built.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ModelInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    name: str
    description: str = ""
    model_id: str = Field(..., alias="modelId")


class ProviderInfo(BaseModel):
    name: str
    tag: str
    aliases: list[str] = Field(default_factory=list, exclude=True)
    models: list[ModelInfo] = Field(default_factory=list)


def _models(*entries: tuple[str, str, str]) -> list[ModelInfo]:
    return [ModelInfo(name=n, description=d, model_id=m) for n, d, m in entries]


PROVIDERS: list[ProviderInfo] = [
    ProviderInfo(
        name="Anthropic",
        tag="anthropic",
        models=_models(
            ("Claude 3.5 Haiku (latest)", "Fastest Claude 3.5 model", "claude-3-5-haiku-latest"),
            ("Claude 3.5 Haiku", "Claude 3.5 Haiku, October 2024", "claude-3-5-haiku-20241022"),
            ("Claude 3.5 Sonnet (latest)", "Most intelligent Claude 3.5 model", "claude-3-5-sonnet-latest"),
            ("Claude 3.5 Sonnet v2", "Claude 3.5 Sonnet, October 2024", "claude-3-5-sonnet-20241022"),
            ("Claude 3.5 Sonnet", "Claude 3.5 Sonnet, June 2024", "claude-3-5-sonnet-20240620"),
            ("Claude 3 Opus (latest)", "Claude 3 model for complex tasks", "claude-3-opus-latest"),
            ("Claude 3 Opus", "Claude 3 Opus, February 2024", "claude-3-opus-20240229"),
            ("Claude 3 Sonnet", "Balanced Claude 3 model", "claude-3-sonnet-20240229"),
            ("Claude 3 Haiku", "Compact Claude 3 model", "claude-3-haiku-20240307"),
            ("Claude 2.1", "Legacy model", "claude-2.1"),
            ("Claude 2.0", "Legacy model", "claude-2.0"),
        ),
    ),
    ProviderInfo(
        name="OpenAI",
        tag="openai",
        models=_models(
            ("ChatGPT-4o (latest)", "Model used in ChatGPT", "chatgpt-4o-latest"),
            ("GPT-4o mini", "Small, fast GPT-4o", "gpt-4o-mini"),
            ("GPT-4", "Previous high-intelligence model", "gpt-4"),
            ("GPT-4 Turbo", "GPT-4 with a larger context window", "gpt-4-turbo"),
            ("GPT-3.5 Turbo", "Legacy chat model", "gpt-3.5-turbo"),
        ),
    ),
    ProviderInfo(
        name="Amazon Bedrock",
        tag="bedrock",
        aliases=["amazon bedrock", "amazon-bedrock"],
        models=_models(
            ("Claude 3 Haiku", "Anthropic on Bedrock", "anthropic.claude-3-haiku-20240307-v1:0"),
            ("Claude 3 Opus", "Anthropic on Bedrock", "anthropic.claude-3-opus-20240229-v1:0"),
            ("Claude 3 Sonnet", "Anthropic on Bedrock", "anthropic.claude-3-sonnet-20240229-v1:0"),
            ("Claude 3.5 Haiku", "Anthropic on Bedrock", "anthropic.claude-3-5-haiku-20241022-v1:0"),
            ("Claude 3.5 Sonnet v2", "Anthropic on Bedrock", "anthropic.claude-3-5-sonnet-20241022-v2:0"),
            ("Claude 3.5 Sonnet", "Anthropic on Bedrock", "anthropic.claude-3-5-sonnet-20240620-v1:0"),
            ("Titan Text Express", "Amazon Titan", "amazon.titan-text-express-v1"),
            ("Command R+", "Cohere on Bedrock", "cohere.command-r-plus-v1:0"),
            ("Command R", "Cohere on Bedrock", "cohere.command-r-v1:0"),
            ("Llama 3 8B Instruct", "Meta on Bedrock", "meta.llama3-8b-instruct-v1:0"),
            ("Llama 3 70B Instruct", "Meta on Bedrock", "meta.llama3-70b-instruct-v1:0"),
            ("Llama 3.1 8B Instruct", "Meta on Bedrock", "meta.llama3-1-8b-instruct-v1:0"),
            ("Llama 3.1 70B Instruct", "Meta on Bedrock", "meta.llama3-1-70b-instruct-v1:0"),
            ("Llama 3.1 405B Instruct", "Meta on Bedrock", "meta.llama3-1-405b-instruct-v1:0"),
            ("Llama 3.2 1B Instruct", "Meta on Bedrock", "meta.llama3-2-1b-instruct-v1:0"),
            ("Llama 3.2 3B Instruct", "Meta on Bedrock", "meta.llama3-2-3b-instruct-v1:0"),
            ("Llama 3.2 11B Instruct", "Meta on Bedrock", "meta.llama3-2-11b-instruct-v1:0"),
            ("Llama 3.2 90B Instruct", "Meta on Bedrock", "meta.llama3-2-90b-instruct-v1:0"),
            ("Llama 3.3 70B Instruct", "Meta on Bedrock", "meta.llama3-3-70b-instruct-v1:0"),
            ("Mistral 7B Instruct", "Mistral on Bedrock", "mistral.mistral-7b-instruct-v0:2"),
            ("Mistral Large", "Mistral on Bedrock", "mistral.mistral-large-2402-v1:0"),
        ),
    ),
    ProviderInfo(
        name="DeepSeek",
        tag="deepseek",
        models=_models(
            ("DeepSeek Chat", "General chat model", "deepseek-chat"),
            ("DeepSeek Reasoner", "Reasoning model", "deepseek-reasoner"),
        ),
    ),
]


def normalize_provider(provider: str) -> Optional[str]:
    """Map a tag, display name or alias (any case) to the canonical tag."""
    key = provider.strip().lower()
    for info in PROVIDERS:
        if key == info.tag or key == info.name.lower() or key in info.aliases:
            return info.tag
    return None


def is_supported(provider: str, model_id: str) -> bool:
    """True when the provider is known and lists the model id."""
    tag = normalize_provider(provider)
    if tag is None:
        return False
    info = next(p for p in PROVIDERS if p.tag == tag)
    return any(m.model_id == model_id for m in info.models)


def catalog_payload() -> dict[str, list[dict]]:
    """Body of GET /llm-providers."""
    return {"providers": [p.model_dump(by_alias=True) for p in PROVIDERS]}
