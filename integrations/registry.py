"""
ProviderRegistry — resolves platform slugs to configured providers.

Platform adapters live outside this repository; they are registered
directly or loaded from ``"package.module:ClassName"`` paths listed in
``config.provider_modules``.
"""

from __future__ import annotations

import importlib
import logging
from typing import Dict, Iterable, List, Optional

from integrations.base import SocialMediaProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Singleton registry for all review platform providers."""

    _instance: Optional["ProviderRegistry"] = None

    def __new__(cls) -> "ProviderRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._providers = {}
        return cls._instance

    def register(self, provider: SocialMediaProvider) -> None:
        """Register (or replace) the provider for its platform."""
        self._providers[provider.platform_name] = provider
        logger.info(
            "Provider registered: %s (%s)",
            provider.display_name,
            provider.platform_name,
        )

    def discover(self, providers: Iterable[SocialMediaProvider]) -> None:
        """Register every configured provider, skipping the rest."""
        for provider in providers:
            if provider.is_configured():
                self.register(provider)
            else:
                logger.warning(
                    "Provider %s skipped — not configured (missing client_id/secret)",
                    provider.platform_name,
                )

    def load(self, dotted_paths: Iterable[str]) -> None:
        """
        Import and instantiate providers from ``"module:ClassName"`` paths.

        Raises ``RuntimeError`` naming the offending entry if one cannot be
        imported or does not produce a ``SocialMediaProvider``.
        """
        instances: List[SocialMediaProvider] = []
        for path in dotted_paths:
            module_name, sep, class_name = path.partition(":")
            if not sep or not module_name or not class_name:
                raise RuntimeError(f"Bad provider path '{path}' (expected 'module:ClassName')")
            try:
                module = importlib.import_module(module_name)
                provider = getattr(module, class_name)()
            except Exception as exc:
                raise RuntimeError(f"Failed to load provider '{path}': {exc}") from exc
            if not isinstance(provider, SocialMediaProvider):
                raise RuntimeError(f"'{path}' is not a SocialMediaProvider")
            instances.append(provider)
        self.discover(instances)

    def get(self, platform: str) -> Optional[SocialMediaProvider]:
        """Get a provider by platform slug."""
        return self._providers.get(platform)

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all registered providers."""
        return [
            {
                "platform": p.platform_name,
                "display_name": p.display_name,
                "configured": p.is_configured(),
            }
            for p in self._providers.values()
        ]

    def list_configured(self) -> List[str]:
        """Return slugs of registered providers."""
        return list(self._providers.keys())

    # ── reset (for tests) ──────────────────────────────────────────────

    @classmethod
    def reset(cls) -> None:
        """Destroy singleton — only useful in test teardown."""
        cls._instance = None
