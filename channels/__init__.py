"""Gateway adapters for the supported WhatsApp providers."""
from channels.base import (
    GatewayAdapter,
    GatewayError,
    TransientGatewayError,
    CircuitOpenError,
    DisconnectedError,
    PermanentGatewayError,
    CircuitBreaker,
    GatewayMetrics,
    classify_failure,
)
from channels.evolution_adapter import EvolutionAdapter
from channels.uazapi_adapter import UazapiAdapter
from channels.registry import GatewayRegistry, CredentialResolver, build_gateway_registry

__all__ = [
    "GatewayAdapter", "GatewayError", "TransientGatewayError", "CircuitOpenError",
    "DisconnectedError", "PermanentGatewayError", "CircuitBreaker", "GatewayMetrics",
    "classify_failure", "EvolutionAdapter", "UazapiAdapter",
    "GatewayRegistry", "CredentialResolver", "build_gateway_registry",
]
