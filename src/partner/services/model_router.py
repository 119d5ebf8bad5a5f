"""Routing helpers for selecting the generative provider and model.

The router does not couple directly to concrete SDK clients; it selects a
provider configuration that the calling service uses to build the matching
client. This keeps the selection policy unit-testable and avoids importing
heavyweight SDKs when they are not required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router across the hosted and local providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, object]] = {
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "alt_api_key_env": "API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta",
            "models": {
                "conversation": ("GEMINI_MODEL", "gemini-3-flash-preview"),
                "deep_reasoning": ("GEMINI_DEEP_MODEL", "gemini-3-pro-preview"),
                "speech": ("GEMINI_TTS_MODEL", "gemini-2.5-flash-preview-tts"),
                "image": ("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image"),
            },
        },
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "default_base_url": "https://api.openai.com/v1",
            "models": {
                "conversation": ("OPENAI_MODEL", "gpt-4o-mini"),
                "deep_reasoning": ("OPENAI_DEEP_MODEL", "gpt-4o"),
            },
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "default_base_url": "http://127.0.0.1:11434/v1",
            "requires_api_key": False,
            "models": {
                "conversation": ("LOCAL_MODEL", "llama3.2:latest"),
                "deep_reasoning": ("LOCAL_DEEP_MODEL", "llama3.2:latest"),
            },
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        "conversation": ("gemini", "openai", "local"),
        "deep_reasoning": ("gemini", "openai", "local"),
        # Speech and image payload formats are Gemini-specific.
        "speech": ("gemini",),
        "image": ("gemini",),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("PARTNER_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred or None

    def api_key(self, selection: ProviderSelection) -> Optional[str]:
        cfg = self.PROVIDER_CONFIG.get(selection.name, {})
        for env_name in (cfg.get("api_key_env"), cfg.get("alt_api_key_env")):
            if env_name:
                value = (self._env.get(str(env_name)) or "").strip()
                if value and value != "undefined":
                    return value
        return None

    def provider_available(self, provider: str, purpose: str = "conversation") -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if purpose not in cfg.get("models", {}):  # type: ignore[operator]
            return False
        if cfg.get("requires_api_key", True):
            candidate = ProviderSelection(name=provider, model="", api_key_env=None)
            return self.api_key(candidate) is not None
        if provider == "local":
            enabled_flag = (self._env.get("PARTNER_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
            return enabled_flag
        return True

    def _resolve_selection(self, provider: str, purpose: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env, default_model = cfg["models"][purpose]  # type: ignore[index]
        model = self._env.get(model_env) or default_model
        base_url_env = str(cfg.get("base_url_env") or "")
        base_url = self._env.get(base_url_env) or cfg.get("default_base_url")
        return ProviderSelection(
            name=provider,
            model=str(model),
            api_key_env=str(cfg.get("api_key_env")) if cfg.get("api_key_env") else None,
            base_url=str(base_url).rstrip("/") if base_url else None,
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no provider configured for the purpose is available. The
            message carries ``API_KEY_MISSING`` so callers classify it as an
            authentication failure.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["conversation"]))
        if self._preferred_provider and self._preferred_provider in priority:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self.provider_available(provider, purpose):
                return self._resolve_selection(provider, purpose)
        raise RuntimeError(f"API_KEY_MISSING: no provider available for {purpose}")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
