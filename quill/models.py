"""Capability-keyed model registry."""

from dataclasses import dataclass

from .report import ConfigError

DEFAULT_MODEL = "gemini-3-flash-preview"
HOSTED_PROVIDER = "gemini-api"


@dataclass(frozen=True)
class ModelInfo:
    name: str
    display_name: str
    provider: str = HOSTED_PROVIDER
    is_cli: bool = False
    supports_tools: bool = True
    supports_session_resumption: bool = False
    supports_web_search: bool = True
    retrieval_with_tools: bool = True


MODELS: dict[str, ModelInfo] = {
    m.name: m
    for m in [
        ModelInfo("gemini-3-flash-preview", "Gemini 3 Flash (preview)"),
        ModelInfo("gemini-3-pro-preview", "Gemini 3 Pro (preview)"),
        ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro"),
        ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", retrieval_with_tools=False),
        ModelInfo(
            "gemma-3-27b-it",
            "Gemma 3 27B",
            supports_tools=False,
            supports_web_search=False,
        ),
        ModelInfo(
            "gemini-cli",
            "Gemini CLI",
            provider="gemini-cli",
            is_cli=True,
            supports_tools=False,
            supports_web_search=False,
        ),
        ModelInfo(
            "claude-cli",
            "Claude CLI",
            provider="claude-cli",
            is_cli=True,
            supports_tools=False,
            supports_session_resumption=True,
            supports_web_search=False,
        ),
        ModelInfo(
            "codex-cli",
            "Codex CLI",
            provider="codex-cli",
            is_cli=True,
            supports_tools=False,
            supports_session_resumption=True,
            supports_web_search=False,
        ),
    ]
}


def supports_function_calling(model: str) -> bool:
    return not model.startswith("gemma")


def model_info(model: str) -> ModelInfo:
    """Look up a model; unknown names are treated as hosted models."""
    if not model:
        raise ConfigError("no model specified")
    info = MODELS.get(model)
    if info is not None:
        return info
    return ModelInfo(
        model,
        model,
        supports_tools=supports_function_calling(model),
        supports_web_search=supports_function_calling(model),
    )


def available_models(adapters: dict) -> list[ModelInfo]:
    """Models whose backend is registered and passes its availability check.

    CLI backends are only offered once their version check succeeds; hosted
    models need a Gemini adapter, which only exists with an API key.
    """
    checked: dict[str, bool] = {}
    models = []
    for info in MODELS.values():
        adapter = adapters.get(info.provider)
        if adapter is None:
            continue
        if info.provider not in checked:
            checked[info.provider] = adapter.is_available()
        if checked[info.provider]:
            models.append(info)
    return models


def build_adapters(
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
) -> dict:
    """Create one adapter per provider, keyed by provider name."""
    from .cli_providers import ClaudeCliAdapter, CodexCliAdapter, GeminiCliAdapter
    from .gemini import GeminiAdapter

    adapters: dict = {
        "gemini-cli": GeminiCliAdapter(),
        "claude-cli": ClaudeCliAdapter(),
        "codex-cli": CodexCliAdapter(),
    }
    if api_key:
        kwargs: dict = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = timeout
        adapters[HOSTED_PROVIDER] = GeminiAdapter(**kwargs)
    return adapters
