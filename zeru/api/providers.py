"""AI provider resolution: which credentials and model serve a tenant.

Per-tenant key storage lives outside this service. The default resolver
serves every tenant from the process settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from zeru.config import Settings


class ProviderNotConfiguredError(RuntimeError):
    """Raised when a tenant has no usable AI provider."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__("AI provider not configured")
        self.tenant_id = tenant_id


@dataclass(frozen=True)
class ProviderConfig:
    api_key: str
    model: str

    def __repr__(self) -> str:
        return f"ProviderConfig(model={self.model!r}, api_key=***)"


class ProviderResolver(Protocol):
    async def resolve(self, tenant_id: str) -> ProviderConfig | None: ...


class SettingsProviderResolver:
    """Resolves every tenant to the key and model in Settings."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def resolve(self, tenant_id: str) -> ProviderConfig | None:
        if not self._settings.openai_api_key:
            return None
        return ProviderConfig(api_key=self._settings.openai_api_key, model=self._settings.model)


async def require_provider(resolver: ProviderResolver, tenant_id: str) -> ProviderConfig:
    config = await resolver.resolve(tenant_id)
    if config is None or not config.api_key:
        raise ProviderNotConfiguredError(tenant_id)
    return config
