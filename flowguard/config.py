"""
Configuration loader for guardrail and resilience settings.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "flowguard.yaml"

_cached_settings: Optional[dict[str, Any]] = None


def get_config_path() -> Path:
    """Resolve the settings file, honouring FLOWGUARD_CONFIG."""
    override = (os.getenv("FLOWGUARD_CONFIG") or "").strip()
    return Path(override) if override else DEFAULT_CONFIG_PATH


def load_settings(force_reload: bool = False) -> dict[str, Any]:
    """
    Load and parse flowguard.yaml.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        Parsed configuration dictionary
    """
    global _cached_settings

    if _cached_settings is not None and not force_reload:
        return _cached_settings

    with open(get_config_path(), "r", encoding="utf-8") as f:
        _cached_settings = yaml.safe_load(f) or {}

    return _cached_settings


def get_default_risk_policy() -> dict[str, Any]:
    """Built-in conservative risk policy used when none is stored or loadable."""
    return dict(load_settings().get("default_risk_policy", {}))


def get_breaker_settings(name: Optional[str] = None) -> dict[str, Any]:
    """
    Get circuit breaker settings for a dependency.

    Named dependencies override the shared defaults key by key.
    """
    breakers = load_settings().get("circuit_breakers", {})
    settings = dict(breakers.get("defaults", {}))
    if name:
        settings.update(breakers.get("dependencies", {}).get(name, {}))
    return settings


def get_configured_dependencies() -> list[str]:
    """Names of dependencies that get a breaker pre-registered."""
    return list(load_settings().get("circuit_breakers", {}).get("dependencies", {}))


def get_retry_policy_settings(name: str) -> dict[str, Any]:
    """Get a named retry policy, falling back to default."""
    policies = load_settings().get("retry_policies", {})
    return dict(policies.get(name) or policies.get("default", {}))


def get_execution_profile_settings(name: str) -> dict[str, Any]:
    """Get a named execution profile, falling back to default."""
    profiles = load_settings().get("execution_profiles", {})
    return dict(profiles.get(name) or profiles.get("default", {}))


def get_idempotency_settings() -> dict[str, Any]:
    """Get idempotency retention and storage settings."""
    settings = dict(load_settings().get("idempotency", {}))
    prefix = (os.getenv("FLOWGUARD_REDIS_PREFIX") or "").strip()
    if prefix:
        settings["redis_prefix"] = prefix
    return settings
