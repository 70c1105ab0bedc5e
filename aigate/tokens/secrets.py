"""
AIGate - Environment Secret Store

Provider credentials read from OPENAI_API_KEY / ANTHROPIC_API_KEY /
GOOGLE_API_KEY.
"""

import os
from typing import Optional

from ..core.config import PROVIDER_SECRET_ENV
from ..core.models import ProviderType
from ..db.base import SecretStore


class EnvSecretStore(SecretStore):
    """Reads one secret per provider type from the process environment."""

    async def get_secret(self, provider: ProviderType) -> Optional[str]:
        value = os.getenv(PROVIDER_SECRET_ENV[provider.value], "")
        return value.strip() or None


def mask_secret(secret: str) -> str:
    """Loggable form of a credential: provider prefix and length only."""
    if len(secret) <= 8:
        return "***"
    return f"{secret[:6]}...({len(secret)})"
