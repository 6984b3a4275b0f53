"""
Gateway registry and per-call credential resolution.

The provider is chosen per instance; credentials resolve on every call with
precedence instance → tenant → platform so a tenant can swap its gateway
server without a restart.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from models.schemas import GatewayProvider, Instance
from config.settings import GatewayConfig
from channels.base import GatewayAdapter, PermanentGatewayError
from channels.evolution_adapter import EvolutionAdapter
from channels.uazapi_adapter import DEFAULT_BASE_URL, UazapiAdapter

logger = structlog.get_logger()


@dataclass
class GatewayCredentials:
    provider: GatewayProvider
    base_url: str = ""
    token: str = ""


def _clean(value: Optional[str]) -> str:
    """Empty for missing values and for unresolved ${VAR} placeholders."""
    value = (value or "").strip()
    if value.startswith("${"):
        return ""
    return value.rstrip("/")


class CredentialResolver:
    def __init__(self, store, platform: GatewayConfig):
        self._store = store
        self._platform = platform

    async def resolve(self, instance: Instance) -> GatewayCredentials:
        tenant = await self._store.get_tenant_gateway_config(instance.tenant_id)

        if instance.provider == GatewayProvider.UAZAPI:
            base_url = (
                _clean(instance.base_url)
                or _clean(tenant.uazapi_base_url if tenant else "")
                or _clean(self._platform.uazapi_base_url)
                or DEFAULT_BASE_URL
            )
            return GatewayCredentials(instance.provider, base_url, _clean(instance.api_token))

        base_url = (
            _clean(instance.base_url)
            or _clean(tenant.evolution_base_url if tenant else "")
            or _clean(self._platform.evolution_base_url)
        )
        token = (
            _clean(instance.api_key)
            or _clean(tenant.evolution_api_key if tenant else "")
            or _clean(self._platform.evolution_api_key)
        )
        return GatewayCredentials(instance.provider, base_url, token)


class GatewayRegistry:
    def __init__(self):
        self._adapters: dict[GatewayProvider, GatewayAdapter] = {}

    def register(self, adapter: GatewayAdapter):
        self._adapters[adapter.provider] = adapter

    def get(self, provider: GatewayProvider) -> Optional[GatewayAdapter]:
        return self._adapters.get(provider)

    def for_instance(self, instance: Instance) -> GatewayAdapter:
        adapter = self._adapters.get(instance.provider)
        if adapter is None:
            raise PermanentGatewayError(
                f"No gateway adapter registered for provider {instance.provider.value}",
                instance.id,
            )
        return adapter

    def get_available(self) -> list[GatewayProvider]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {p.value: await a.health_check() for p, a in self._adapters.items()}

    async def shutdown_all(self):
        for adapter in self._adapters.values():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("gateway_shutdown_failed",
                               provider=adapter.provider.value, error=str(e))


def build_gateway_registry(store, config: GatewayConfig,
                           transport: Optional[httpx.AsyncBaseTransport] = None) -> GatewayRegistry:
    """Register both providers behind one shared credential resolver."""
    resolver = CredentialResolver(store, config)
    registry = GatewayRegistry()
    for cls in (EvolutionAdapter, UazapiAdapter):
        registry.register(cls(
            resolver,
            timeout=config.timeout_seconds,
            transport=transport,
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_seconds,
        ))
    return registry
