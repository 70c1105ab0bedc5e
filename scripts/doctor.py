"""Environment compatibility and preflight checks before starting AIGate."""

from __future__ import annotations

import ipaddress
import os
import socket
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from aigate.core.config import PROVIDER_SECRET_ENV
from aigate.core.models import ProviderType
from aigate.tokens.manager import KEY_PATTERNS

MIN_PYTHON = (3, 10)
MAX_PYTHON = (3, 13)

TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class DoctorResult:
    ok: bool
    messages: List[str]


def _python_version_tuple() -> Tuple[int, int, int]:
    v = sys.version_info
    return (v.major, v.minor, v.micro)


def _check_python_version(errors: List[str]) -> None:
    current = _python_version_tuple()
    if current[:2] < MIN_PYTHON or current[:2] > MAX_PYTHON:
        errors.append(
            f"Python {current[0]}.{current[1]} is unsupported. "
            f"Use Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} to {MAX_PYTHON[0]}.{MAX_PYTHON[1]}."
        )


def _require_non_empty(env: Mapping[str, str], keys: Sequence[str], errors: List[str], mode: str) -> None:
    for key in keys:
        if not env.get(key, "").strip():
            errors.append(f"MODE={mode} requires `{key}` to be set and non-empty.")


def _check_mode_requirements(env: Mapping[str, str], errors: List[str], warnings: List[str]) -> None:
    mode = env.get("MODE", "prod").strip().lower()
    if mode not in {"local", "test", "prod", "production"}:
        errors.append("MODE must be one of: local, test, prod, production.")
        return

    stub = env.get("USE_STUB_PROVIDERS", "false").strip().lower() in TRUTHY

    if mode in {"prod", "production"}:
        _require_non_empty(env, ["DATABASE_URL"], errors, mode)
        if stub:
            errors.append("USE_STUB_PROVIDERS is not allowed in production mode.")
        if not env.get("ADMIN_TOKEN", "").strip():
            warnings.append("ADMIN_TOKEN is not set; /v1/admin endpoints will reject every call.")

    if mode == "local" and not stub:
        has_key = any(env.get(k, "").strip() for k in PROVIDER_SECRET_ENV.values())
        if not has_key:
            warnings.append(
                "MODE=local: no provider keys configured. Set `USE_STUB_PROVIDERS=true` "
                "or at least one provider key."
            )

    secret_store = env.get("SECRET_STORE", "env").strip().lower()
    if secret_store not in {"env", "database"}:
        errors.append("SECRET_STORE must be one of: env, database.")


def _check_provider_keys(env: Mapping[str, str], errors: List[str]) -> None:
    for provider in ProviderType:
        name = PROVIDER_SECRET_ENV[provider.value]
        value = env.get(name, "").strip()
        if value and not KEY_PATTERNS[provider].match(value):
            errors.append(f"`{name}` does not look like a {provider.value} key.")


def _check_numbers(env: Mapping[str, str], errors: List[str]) -> None:
    for key, cast in (("PROVIDER_TIMEOUT_SECONDS", float), ("AUDIT_QUEUE_SIZE", int)):
        raw = env.get(key, "").strip()
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError:
            errors.append(f"{key} must be a number, got `{raw}`.")
            continue
        if value <= 0:
            errors.append(f"{key} must be positive, got `{raw}`.")

    for cidr in env.get("BLOCKED_IP_NETWORKS", "").split(","):
        if not cidr.strip():
            continue
        try:
            ipaddress.ip_network(cidr.strip(), strict=False)
        except ValueError:
            errors.append(f"BLOCKED_IP_NETWORKS entry `{cidr.strip()}` is not a valid network.")


def _check_port_binding(env: Mapping[str, str], errors: List[str]) -> None:
    host = env.get("HOST", "0.0.0.0").strip() or "0.0.0.0"
    raw_port = env.get("PORT", "8000").strip() or "8000"

    try:
        port = int(raw_port)
    except ValueError:
        errors.append(f"PORT must be an integer, got `{raw_port}`.")
        return

    if not (0 < port < 65536):
        errors.append(f"PORT must be between 1 and 65535, got `{port}`.")
        return

    bind_host = "127.0.0.1" if host in {"0.0.0.0", "localhost", ""} else host
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((bind_host, port))
    except OSError as exc:
        errors.append(
            f"PORT/HOST conflict: cannot bind {bind_host}:{port} ({exc}). "
            "Pick a free port, e.g. `PORT=8010`."
        )
    finally:
        sock.close()


def run_doctor(env: Optional[Mapping[str, str]] = None) -> DoctorResult:
    env_map: Mapping[str, str] = env or os.environ
    errors: List[str] = []
    warnings: List[str] = []

    _check_python_version(errors)
    _check_mode_requirements(env_map, errors, warnings)
    _check_provider_keys(env_map, errors)
    _check_numbers(env_map, errors)
    _check_port_binding(env_map, errors)

    messages: List[str] = []
    if errors:
        messages.append("Doctor found configuration issues:")
        for i, msg in enumerate(errors, 1):
            messages.append(f"{i}. {msg}")
        messages.append("Fix the items above and rerun `python scripts/doctor.py`.")
    else:
        messages.append("Doctor checks passed.")

    if warnings:
        messages.append("Warnings:")
        for i, msg in enumerate(warnings, 1):
            messages.append(f"- {msg}")

    return DoctorResult(ok=not errors, messages=messages)


def main() -> int:
    result = run_doctor()
    print("\n".join(result.messages))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
