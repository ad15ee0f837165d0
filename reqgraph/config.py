"""Configuration paths and defaults for reqgraph."""

from __future__ import annotations

import os

from .config_manager import BASE_DIR, load_analysis_config, load_config

_toml_config = load_config()
_analysis_config = load_analysis_config()

# LLM Provider Configuration, loaded from ~/.reqgraph/config.toml (set via `reqgraph set-llm`)
LLM_PROVIDER = _toml_config.get("provider", "openai")
LLM_API_KEY = _toml_config.get("api_key", "") or os.environ.get("OPENAI_API_KEY", "")
LLM_MODEL = _toml_config.get("model", "gpt-4o")
LLM_ENDPOINT = _toml_config.get("endpoint", "") or os.environ.get("OPENAI_BASE_URL", "")

# Analysis defaults: 2 steps for target identification + master node,
# then 3 per loop iteration.
MAX_STEPS = int(_analysis_config.get("max_steps", 20))
URL_CHUNK_SIZE = int(_analysis_config.get("url_chunk_size", 15))
# 0 = no limit; small local models usually need around 8000
MAX_PROMPT_CHARS = int(_analysis_config.get("max_prompt_chars", 0))
