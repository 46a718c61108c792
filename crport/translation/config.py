#!/usr/bin/env python3
# CUI // SP-CTI
"""Translation configuration loader.

Reads crport/args/translation_config.yaml and deep-merges it over the built-in
defaults, so a partial YAML file only has to name the keys it changes.
The merged dict is read-only configuration for the duration of a batch.
"""

import copy
import logging
from pathlib import Path

import yaml

from crport.translation.errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = BASE_DIR / "args" / "translation_config.yaml"

logger = logging.getLogger("crport.translation.config")

DEFAULT_CONFIG = {
    "languages": {
        "source": "go",
        "target": "crystal",
    },
    "rules": {
        "table_path": "context/translation/go_crystal_rules.yaml",
        "dependency_mappings_path": "context/translation/dependency_mappings.json",
    },
    "extraction": {
        "max_file_size": 500000,
        "exclude_dirs": ["vendor", "testdata", ".git", "node_modules"],
    },
    "batch": {
        "strict": True,
        "max_workers": 4,
    },
    "emitter": {
        "cui_marking": True,
        "provenance_comment": True,
        "indent": 2,
    },
    "verification": {
        "timeout_seconds": 60,
        "max_workers": 4,
        "runner_command": ["crystal", "run", "--no-color"],
    },
}


def _deep_merge(base, override):
    """Return a new dict: ``override`` merged recursively onto ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path=None):
    """Load translation config from YAML, falling back to built-in defaults."""
    config_path = Path(path) if path else CONFIG_PATH
    if not config_path.exists():
        if path:
            raise ConfigurationError(f"Config file not found: {config_path}", config_key="path")
        logger.debug("No config at %s, using defaults", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")
    return _deep_merge(DEFAULT_CONFIG, data)


def resolve_path(value):
    """Resolve a config path relative to the installed crport package."""
    p = Path(value)
    return p if p.is_absolute() else BASE_DIR / p
