"""Configuration manager for reqgraph using TOML files."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import toml

logger = logging.getLogger(__name__)

BASE_DIR = Path(os.environ.get("REQGRAPH_HOME", str(Path.home() / ".reqgraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"


# Default configurations for each provider
DEFAULT_CONFIGS = {
    "openai": {
        "provider": "openai",
        "model": "gpt-4o",
        "api_key": "",
    },
    "ollama": {
        "provider": "ollama",
        "model": "qwen2.5-coder:7b",
        "endpoint": "http://127.0.0.1:11434/api/generate",
    },
    "groq": {
        "provider": "groq",
        "model": "llama-3.3-70b-versatile",
        "api_key": "",
    },
    "anthropic": {
        "provider": "anthropic",
        "model": "claude-3-5-sonnet-20241022",
        "api_key": "",
    },
}

DEFAULT_ANALYSIS = {
    "max_steps": 20,
    "url_chunk_size": 15,
    "max_prompt_chars": 0,
}


def load_full_config() -> Dict[str, Any]:
    """Load the entire TOML config (all sections)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", CONFIG_FILE, exc)
        return {}


def _save_full_config(config: Dict[str, Any]) -> bool:
    """Write entire config dict to TOML file, preserving all sections."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(CONFIG_FILE, "w") as f:
            toml.dump(config, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config file %s: %s", CONFIG_FILE, exc)
        return False


def load_config() -> Dict[str, Any]:
    """Load the ``[llm]`` section.

    Returns:
        Configuration dictionary with provider settings.
        Falls back to OpenAI defaults if the file or section doesn't exist.
    """
    llm = load_full_config().get("llm")
    if not llm:
        return DEFAULT_CONFIGS["openai"].copy()
    return llm


def save_config(provider: str, model: str, api_key: str = "", endpoint: str = "") -> bool:
    """Save LLM configuration to TOML file.

    Preserves other sections (e.g. ``[analysis]``) in the file.

    Args:
        provider: Provider name (openai, ollama, groq, anthropic)
        model: Model name
        api_key: API key for cloud providers
        endpoint: Custom endpoint (Ollama, LM Studio, other OpenAI-compatible servers)

    Returns:
        True if saved successfully, False otherwise
    """
    config = load_full_config()

    config["llm"] = {
        "provider": provider,
        "model": model,
    }
    if api_key:
        config["llm"]["api_key"] = api_key
    if endpoint:
        config["llm"]["endpoint"] = endpoint

    return _save_full_config(config)


def clear_llm_config() -> bool:
    """Remove ``[llm]`` section from config, resetting to defaults."""
    config = load_full_config()
    config.pop("llm", None)
    return _save_full_config(config)


# ------------------------------------------------------------------
# Analysis configuration
# ------------------------------------------------------------------

def load_analysis_config() -> Dict[str, Any]:
    """Load the ``[analysis]`` section merged over the defaults."""
    merged = DEFAULT_ANALYSIS.copy()
    merged.update(load_full_config().get("analysis", {}))
    return merged


def save_analysis_config(**values: Any) -> bool:
    """Update keys of the ``[analysis]`` section.

    Unknown keys are rejected so typos don't silently vanish.
    """
    unknown = set(values) - set(DEFAULT_ANALYSIS)
    if unknown:
        raise ValueError(f"Unknown analysis settings: {', '.join(sorted(unknown))}")
    config = load_full_config()
    section = config.setdefault("analysis", {})
    section.update(values)
    return _save_full_config(config)


def get_provider_config(provider: str) -> Dict[str, Any]:
    """Get default configuration for a specific provider."""
    return DEFAULT_CONFIGS.get(provider, DEFAULT_CONFIGS["openai"]).copy()
