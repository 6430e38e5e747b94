"""
Configuration file management.

Stores settings in a JSON config file at ~/.lmbridge/config.json:
  - host / port: where `lmbridge serve` listens
  - upstream_url: the Ollama server used as model provider
  - default_vendor: vendor queried first during model discovery
  - aliases: short nicknames mapped to model names (e.g., "fast" -> "ollama-llama3:8b")

Config file format:
    {
        "host": "127.0.0.1",
        "port": 3000,
        "upstream_url": "http://localhost:11434",
        "default_vendor": "ollama",
        "aliases": {
            "fast": "ollama-llama3:8b"
        }
    }
"""

import json
from pathlib import Path
from typing import Optional

CONFIG_PATH = Path.home() / ".lmbridge" / "config.json"

# Defaults used when no config file exists, it's corrupted, or a key is missing
DEFAULT_CONFIG = {
    "host": "127.0.0.1",
    "port": 3000,
    "upstream_url": "http://localhost:11434",
    "default_vendor": "ollama",
    "aliases": {},
}


def load_config(path: Optional[Path] = None) -> dict:
    """Load the configuration from disk, merged over DEFAULT_CONFIG.

    Args:
        path: Config file to read. Defaults to CONFIG_PATH.

    Returns:
        dict: The configuration dictionary. Defaults if the file doesn't exist or
              can't be parsed.
    """
    path = path or CONFIG_PATH
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    if not path.exists():
        return config
    try:
        stored = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return config
    if isinstance(stored, dict):
        config.update(stored)
    return config


def save_config(config: dict, path: Optional[Path] = None) -> None:
    """Write the configuration to disk as pretty-printed JSON.

    Creates the parent directory (~/.lmbridge/) if it doesn't exist.
    """
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(config, indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )


def resolve_model(name: Optional[str], config: Optional[dict] = None) -> Optional[str]:
    """Resolve a model alias to the model name it stands for.

    Unknown names pass through unchanged so the registry can apply its own
    matching and fallback.

    Args:
        name: A requested model name or alias, or None.
        config: Optional pre-loaded config dict. If None, loads from disk.

    Returns:
        str | None: The aliased model name, or `name` itself.
    """
    if name is None:
        return None
    if config is None:
        config = load_config()
    return config.get("aliases", {}).get(name, name)
