"""AIGate tokens: model-to-provider mapping and the provider credential cache."""

from .manager import (
    CACHE_TTL_SECONDS,
    KEY_PATTERNS,
    MODEL_PROVIDERS,
    ROTATION_THRESHOLD,
    ProviderHandle,
    TokenManager,
    resolve_provider,
    validate_token_format,
)
from .secrets import EnvSecretStore, mask_secret

__all__ = [
    "CACHE_TTL_SECONDS",
    "KEY_PATTERNS",
    "MODEL_PROVIDERS",
    "ROTATION_THRESHOLD",
    "ProviderHandle",
    "TokenManager",
    "resolve_provider",
    "validate_token_format",
    "EnvSecretStore",
    "mask_secret",
]
