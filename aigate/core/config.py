"""
AIGate - Runtime Configuration

Handles local vs production mode and environment-driven settings.
"""

import os
from enum import Enum
from typing import Dict, List


class GateMode(str, Enum):
    """Runtime mode."""

    LOCAL = "local"  # In-memory stores, X-User-Id identity header accepted
    PROD = "prod"    # PostgreSQL-backed stores and session lookup
    TEST = "test"    # Deterministic in-memory stores


def get_gate_mode() -> GateMode:
    """
    Get the current runtime mode.

    MODE must be one of: local, prod/production, test.

    Default: prod (fail-closed default for safer deployments).
    """
    mode = os.getenv("MODE", "prod").lower().strip()
    if mode in {"prod", "production"}:
        return GateMode.PROD
    if mode == "local":
        return GateMode.LOCAL
    if mode == "test":
        return GateMode.TEST
    raise ValueError("Invalid MODE. Use one of: local, prod, production, test")


def is_local_mode() -> bool:
    """Check if running in local mode."""
    return get_gate_mode() == GateMode.LOCAL


def is_prod_mode() -> bool:
    """Check if running in production mode."""
    return get_gate_mode() == GateMode.PROD


def is_test_mode() -> bool:
    """Check if running in test mode."""
    return get_gate_mode() == GateMode.TEST


def _is_truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def use_stub_providers() -> bool:
    return _is_truthy(os.getenv("USE_STUB_PROVIDERS", "false"))


# Environment variable holding each provider's credential
PROVIDER_SECRET_ENV: Dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def get_provider_timeout() -> float:
    """Default provider-call deadline in seconds when the caller gives none."""
    return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "30"))


def get_audit_queue_size() -> int:
    return int(os.getenv("AUDIT_QUEUE_SIZE", "1000"))


def get_blocked_networks() -> List[str]:
    """Parse BLOCKED_IP_NETWORKS (comma-separated CIDRs) from environment."""
    raw = os.getenv("BLOCKED_IP_NETWORKS", "")
    return [cidr.strip() for cidr in raw.split(",") if cidr.strip()]


def get_secret_store_kind() -> str:
    """SECRET_STORE: "env" (provider keys from the environment) or "database"."""
    kind = os.getenv("SECRET_STORE", "env").strip().lower()
    if kind not in {"env", "database"}:
        raise ValueError("Invalid SECRET_STORE. Use one of: env, database")
    return kind


def validate_runtime_config() -> None:
    """Fail closed for unsafe production startup configuration."""
    mode = get_gate_mode()
    if mode in {GateMode.LOCAL, GateMode.TEST}:
        return

    if use_stub_providers():
        raise RuntimeError("USE_STUB_PROVIDERS is not allowed in production mode")

    if not os.getenv("DATABASE_URL"):
        raise RuntimeError("DATABASE_URL is required in production mode")


def get_admin_token() -> str:
    """ADMIN_TOKEN guarding the /v1/admin endpoints in prod mode."""
    return os.getenv("ADMIN_TOKEN", "").strip()
