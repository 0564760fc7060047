"""Configuration loader and per-tier LLM config builder."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import AzureConfig, ModelEndpointOverride, ModelTier, ProjectConfig

load_dotenv()

# ---------------------------------------------------------------------------
# YAML loading with ${ENV_VAR} interpolation
# ---------------------------------------------------------------------------

_ENV_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` in every string of a YAML tree.

    Unset variables without a default become empty strings.
    """
    if isinstance(value, str):
        return _ENV_RE.sub(lambda m: os.environ.get(m.group(1)) or (m.group(2) or ""), value)
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


_AZURE_ENV = {
    "api_key": "AZURE_OPENAI_API_KEY",
    "api_version": "AZURE_OPENAI_API_VERSION",
    "endpoint": "AZURE_OPENAI_ENDPOINT",
}


def apply_azure_fallbacks(config: ProjectConfig) -> ProjectConfig:
    """Take blank ``azure`` fields from the ``AZURE_OPENAI_*`` environment.

    Mutates and returns *config*; the endpoint loses any trailing slash.
    """
    for field_name, env_name in _AZURE_ENV.items():
        if not getattr(config.azure, field_name):
            setattr(config.azure, field_name, os.getenv(env_name, ""))
    config.azure.endpoint = config.azure.endpoint.rstrip("/")
    return config


def load_config(config_path: str | Path) -> ProjectConfig:
    """Read a course project YAML file into a ``ProjectConfig``.

    Raises:
        FileNotFoundError: if *config_path* does not exist.
        ValueError: if the document is not a mapping.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    # Hydra-only keys may live in the same file.
    raw.pop("defaults", None)
    return apply_azure_fallbacks(ProjectConfig.model_validate(_resolve_env_vars(raw)))


# ---------------------------------------------------------------------------
# LLM config builder
# ---------------------------------------------------------------------------

def _is_azure_openai_endpoint(endpoint: str) -> bool:
    """True for Azure OpenAI hosts, which route by deployment name."""
    lower = endpoint.lower()
    return "openai.azure.com" in lower or "cognitiveservices.azure.com" in lower


def _build_single_entry(
    model: str,
    azure: AzureConfig,
    override: ModelEndpointOverride | None = None,
) -> dict[str, Any]:
    """One AG2 ``config_list`` entry for *model*.

    Override credentials win over the shared ``azure`` block. An override
    ``api_type`` is passed through with the endpoint as ``base_url``.
    """
    endpoint = azure.endpoint
    api_key = azure.api_key
    api_version = azure.api_version
    api_type: str | None = None
    if override is not None:
        endpoint = override.endpoint.rstrip("/")
        api_key = override.api_key or api_key
        api_version = override.api_version or api_version
        api_type = override.api_type

    entry: dict[str, Any] = {"model": model, "api_key": api_key}
    if api_type:
        entry.update(api_type=api_type, base_url=endpoint)
    elif endpoint and _is_azure_openai_endpoint(endpoint):
        entry.update(
            api_type="azure",
            azure_endpoint=endpoint,
            api_version=api_version,
            azure_deployment=model,
        )
    elif endpoint:
        entry["base_url"] = endpoint
    return entry


def build_tier_llm_config(tier: ModelTier, config: ProjectConfig) -> dict[str, Any]:
    """``llm_config`` for the ``OpenAIWrapper`` serving *tier*.

    The tier resolves to a model name through ``config.models``; an
    ``overrides`` entry for that name supplies its own endpoint.

    Raises:
        ValueError: if no model is configured for *tier*.
    """
    model = config.models.model_for(tier)
    if not model:
        raise ValueError(f"No model configured for tier {tier.name}")
    override = config.models.overrides.get(model)
    entry = _build_single_entry(model, config.azure, override=override)
    return {
        "config_list": [entry],
        "timeout": config.timeout,
        "seed": config.seed,
    }
