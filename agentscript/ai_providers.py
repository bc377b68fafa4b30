from __future__ import annotations
import os
import random
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger

from .errors import ProviderError

# Optional third-party SDK imports guarded to avoid hard deps
try:
    from openai import OpenAI as _OpenAIClient  # type: ignore
except Exception:  # pragma: no cover
    _OpenAIClient = None

try:
    import anthropic  # type: ignore
except Exception:  # pragma: no cover
    anthropic = None

try:
    import google.generativeai as genai  # type: ignore
except Exception:  # pragma: no cover
    genai = None

try:
    from mistralai import Mistral as _MistralClient  # type: ignore
except Exception:  # pragma: no cover
    _MistralClient = None

try:
    import cohere as _cohere  # type: ignore
except Exception:  # pragma: no cover
    _cohere = None

try:
    import requests  # type: ignore
except Exception:  # pragma: no cover
    requests = None


class TextGenerator(Protocol):
    """Anything that turns a prompt into text: providers, test fakes."""

    def generate(self, prompt: str, system: Optional[str] = None) -> str: ...  # pragma: no cover - protocol


# ─── Retries ────────────────────────────────────────────────────
RETRYABLE_PATTERNS = (
    "429",
    "rate limit",
    "resource exhausted",
    "too many requests",
    "quota exceeded",
    "temporarily unavailable",
    "503",
    "502",
    "504",
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "eof",
)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(p in msg for p in RETRYABLE_PATTERNS)


def _get_timeout_s(default: int = 60) -> int:
    try:
        return int(os.getenv("AGENTSCRIPT_AI_TIMEOUT", default))
    except ValueError:
        return default


def _get_retries(default: int = 2) -> int:
    try:
        return int(os.getenv("AGENTSCRIPT_AI_RETRIES", default))
    except ValueError:
        return default


def _with_retries(fn: Callable[[], str], retries: int = 2, base_delay: float = 0.5, max_delay: float = 30.0, jitter: float = 0.25) -> str:
    """Call ``fn`` with exponential backoff; non-retryable errors surface at once."""
    for i in range(retries + 1):
        try:
            return fn()
        except Exception as e:
            if i == retries or not is_retryable(e):
                raise
            delay = min(base_delay * (2 ** i), max_delay)
            delay += delay * jitter * (random.random() * 2 - 1)
            logger.debug("retryable provider error ({}), attempt {}/{}, sleeping {:.2f}s", e, i + 1, retries + 1, delay)
            time.sleep(max(delay, 0.0))
    raise ProviderError("retries exhausted")  # pragma: no cover - loop always returns or raises


def _model(provider: str, default: str) -> str:
    return os.getenv(f"AGENTSCRIPT_{provider.upper()}_MODEL") or default


def _messages(prompt: str, system: Optional[str]) -> List[Dict[str, str]]:
    msgs = []
    if system:
        msgs.append({"role": "system", "content": system})
    msgs.append({"role": "user", "content": prompt})
    return msgs


class AIProvider:
    name: str = "base"

    def generate(self, prompt: str, system: Optional[str] = None) -> str:
        try:
            return _with_retries(lambda: self._complete(prompt, system), retries=_get_retries())
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{self.name}: {e}") from e

    def _complete(self, prompt: str, system: Optional[str]) -> str:  # pragma: no cover - abstract
        raise NotImplementedError


class OpenAIProvider(AIProvider):
    name = "openai"

    def __init__(self) -> None:
        if not _OpenAIClient or not os.getenv("OPENAI_API_KEY"):
            raise ProviderError("OpenAI not available: missing client or OPENAI_API_KEY")
        self.client = _OpenAIClient()
        self.model = _model(self.name, "gpt-4o")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=_messages(prompt, system),
            timeout=_get_timeout_s(),
        )
        return resp.choices[0].message.content or ""


class AnthropicProvider(AIProvider):
    name = "anthropic"

    def __init__(self) -> None:
        if not anthropic or not os.getenv("ANTHROPIC_API_KEY"):
            raise ProviderError("Anthropic not available")
        self.client = anthropic.Anthropic(api_key=os.getenv("ANTHROPIC_API_KEY"))
        self.model = _model(self.name, "claude-sonnet-4-5")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        kwargs: Dict[str, Any] = {}
        if system:
            kwargs["system"] = system
        msg = self.client.messages.create(
            model=self.model,
            max_tokens=4096,
            messages=[{"role": "user", "content": prompt}],
            timeout=_get_timeout_s(),
            **kwargs,
        )
        return "".join(part.text for part in msg.content if getattr(part, "type", "") == "text")


class GeminiProvider(AIProvider):
    name = "gemini"

    def __init__(self) -> None:
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not genai or not api_key:
            raise ProviderError("Gemini not available")
        genai.configure(api_key=api_key)
        self.model = _model(self.name, "gemini-2.0-flash")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        model = genai.GenerativeModel(self.model, system_instruction=system) if system else genai.GenerativeModel(self.model)
        resp = model.generate_content(prompt, request_options={"timeout": _get_timeout_s()})
        return resp.text or ""


class MistralProvider(AIProvider):
    name = "mistral"

    def __init__(self) -> None:
        if not _MistralClient or not os.getenv("MISTRAL_API_KEY"):
            raise ProviderError("Mistral not available")
        self.client = _MistralClient(api_key=os.getenv("MISTRAL_API_KEY"))
        self.model = _model(self.name, "mistral-large-latest")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        resp = self.client.chat.complete(model=self.model, messages=_messages(prompt, system))
        return resp.choices[0].message.content if resp and resp.choices else ""


class CohereProvider(AIProvider):
    name = "cohere"

    def __init__(self) -> None:
        if not _cohere or not os.getenv("COHERE_API_KEY"):
            raise ProviderError("Cohere not available")
        self.client = _cohere.ClientV2(api_key=os.getenv("COHERE_API_KEY"))
        self.model = _model(self.name, "command-r-plus")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        resp = self.client.chat(model=self.model, messages=_messages(prompt, system))
        return "".join(getattr(part, "text", "") for part in (resp.message.content or []))


class AzureOpenAIProvider(AIProvider):
    name = "azure"

    def __init__(self) -> None:
        if not requests or not (os.getenv("AZURE_OPENAI_API_KEY") and os.getenv("AZURE_OPENAI_ENDPOINT") and os.getenv("AZURE_OPENAI_DEPLOYMENT")):
            raise ProviderError("Azure OpenAI not available")
        self.api_key = os.getenv("AZURE_OPENAI_API_KEY")
        self.endpoint = os.getenv("AZURE_OPENAI_ENDPOINT").rstrip("/")
        self.deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        self.api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-21")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        url = f"{self.endpoint}/openai/deployments/{self.deployment}/chat/completions?api-version={self.api_version}"
        headers = {"api-key": self.api_key, "Content-Type": "application/json"}
        r = requests.post(url, headers=headers, json={"messages": _messages(prompt, system)}, timeout=_get_timeout_s())
        r.raise_for_status()
        data = r.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "")


class OpenRouterProvider(AIProvider):
    name = "openrouter"

    def __init__(self) -> None:
        if not requests or not os.getenv("OPENROUTER_API_KEY"):
            raise ProviderError("OpenRouter not available")
        self.api_key = os.getenv("OPENROUTER_API_KEY")
        self.model = _model(self.name, "openai/gpt-4o")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        url = "https://openrouter.ai/api/v1/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = {"model": self.model, "messages": _messages(prompt, system)}
        r = requests.post(url, headers=headers, json=body, timeout=_get_timeout_s())
        r.raise_for_status()
        data = r.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "")


class OllamaProvider(AIProvider):
    name = "ollama"

    def __init__(self) -> None:
        if not requests or not os.getenv("OLLAMA_HOST"):
            raise ProviderError("Ollama not available")
        self.base = os.getenv("OLLAMA_HOST").rstrip("/")
        self.model = _model(self.name, "llama3.3")

    def _complete(self, prompt: str, system: Optional[str]) -> str:
        body = {"model": self.model, "messages": _messages(prompt, system), "stream": False}
        r = requests.post(f"{self.base}/api/chat", json=body, timeout=_get_timeout_s(120))
        r.raise_for_status()
        data = r.json()
        if isinstance(data, dict):
            return (data.get("message") or {}).get("content", "")
        return ""


PROVIDERS: Dict[str, type] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
    "mistral": MistralProvider,
    "cohere": CohereProvider,
    "azure": AzureOpenAIProvider,
    "openrouter": OpenRouterProvider,
    "ollama": OllamaProvider,
}


def select_provider(forced: Optional[str] = None) -> Optional[AIProvider]:
    """Select a provider by AGENTSCRIPT_AI_PROVIDER or the precedence list.

    Precedence: OpenAI → Anthropic → Gemini → Mistral → Cohere → Azure → OpenRouter → Ollama
    """
    forced = (forced if forced is not None else os.getenv("AGENTSCRIPT_AI_PROVIDER") or "").strip().lower()
    if forced and forced != "auto":
        cls = PROVIDERS.get(forced)
        if cls is None:
            raise ProviderError(f"Unknown AI provider '{forced}' (choose from {', '.join(PROVIDERS)})")
        try:
            return cls()
        except ProviderError as e:
            logger.warning("forced provider '{}' unavailable: {}", forced, e)
            return None

    for name, cls in PROVIDERS.items():
        try:
            prov = cls()
        except ProviderError:
            continue
        logger.debug("selected AI provider '{}'", name)
        return prov
    return None
