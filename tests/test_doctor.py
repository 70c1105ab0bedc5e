"""Tests for preflight doctor checks."""

from __future__ import annotations

import pytest

from aigate.core.config import GateMode, get_gate_mode, validate_runtime_config
from scripts import doctor
from scripts.doctor import run_doctor


_real_port_check = doctor._check_port_binding


@pytest.fixture(autouse=True)
def no_port_binding(monkeypatch):
    monkeypatch.setattr(doctor, "_check_port_binding", lambda env, errors: None)
    monkeypatch.setattr(doctor, "_python_version_tuple", lambda: (3, 12, 0))


def test_doctor_fails_when_prod_missing_required_env() -> None:
    result = run_doctor({"MODE": "prod", "PORT": "8000", "HOST": "127.0.0.1"})
    assert result.ok is False
    joined = "\n".join(result.messages)
    assert "DATABASE_URL" in joined
    assert "ADMIN_TOKEN" in joined


def test_doctor_rejects_stub_providers_in_prod() -> None:
    result = run_doctor({
        "MODE": "production",
        "DATABASE_URL": "postgresql://localhost/aigate",
        "ADMIN_TOKEN": "x",
        "USE_STUB_PROVIDERS": "true",
    })
    assert result.ok is False
    assert any("USE_STUB_PROVIDERS" in m for m in result.messages)


def test_doctor_passes_in_local_stub_mode() -> None:
    result = run_doctor({"MODE": "local", "USE_STUB_PROVIDERS": "true"})
    assert result.ok is True
    assert result.messages[0] == "Doctor checks passed."


def test_doctor_warns_without_provider_keys_in_local_mode() -> None:
    result = run_doctor({"MODE": "local"})
    assert result.ok is True
    assert any("no provider keys" in m for m in result.messages)


def test_doctor_checks_key_format() -> None:
    result = run_doctor({"MODE": "test", "OPENAI_API_KEY": "not-a-key"})
    assert result.ok is False
    assert any("OPENAI_API_KEY" in m for m in result.messages)


def test_doctor_checks_numbers_and_networks() -> None:
    result = run_doctor({
        "MODE": "test",
        "PROVIDER_TIMEOUT_SECONDS": "-1",
        "AUDIT_QUEUE_SIZE": "lots",
        "BLOCKED_IP_NETWORKS": "10.0.0.0/8, 300.1.0.0/16",
        "SECRET_STORE": "vault",
    })
    joined = "\n".join(result.messages)
    assert result.ok is False
    assert "PROVIDER_TIMEOUT_SECONDS" in joined
    assert "AUDIT_QUEUE_SIZE" in joined
    assert "300.1.0.0/16" in joined
    assert "SECRET_STORE" in joined


def test_doctor_rejects_unknown_mode() -> None:
    result = run_doctor({"MODE": "staging"})
    assert result.ok is False


def test_port_must_be_numeric() -> None:
    errors: list = []
    _real_port_check({"PORT": "http"}, errors)
    assert errors and "PORT must be an integer" in errors[0]


class TestRuntimeConfig:
    """Tests for the server's startup checks."""

    def test_unknown_mode_raises(self, monkeypatch):
        monkeypatch.setenv("MODE", "staging")
        with pytest.raises(ValueError):
            get_gate_mode()

    def test_prod_requires_database(self, monkeypatch):
        monkeypatch.setenv("MODE", "prod")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("USE_STUB_PROVIDERS", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            validate_runtime_config()

    def test_prod_forbids_stub_providers(self, monkeypatch):
        monkeypatch.setenv("MODE", "production")
        monkeypatch.setenv("USE_STUB_PROVIDERS", "yes")
        with pytest.raises(RuntimeError, match="USE_STUB_PROVIDERS"):
            validate_runtime_config()

    def test_test_mode_is_permissive(self, monkeypatch):
        monkeypatch.setenv("MODE", "test")
        monkeypatch.setenv("USE_STUB_PROVIDERS", "true")
        assert get_gate_mode() == GateMode.TEST
        validate_runtime_config()
