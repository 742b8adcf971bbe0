import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import ResumeBatcherConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def expand_dotted(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Turn {"batch.max_batch_size": 30} into {"batch": {"max_batch_size": 30}}.

    Keys without a dot are kept as-is, so nested dicts pass through untouched.
    """
    result: Dict[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        parts = key.split(".")
        node = result
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        if isinstance(value, dict) and isinstance(node.get(parts[-1]), dict):
            node[parts[-1]] = merge_dicts(node[parts[-1]], value)
        else:
            node[parts[-1]] = value
    return result


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> ResumeBatcherConfig:
    """
    Resolve config: Default < Local < overrides.

    Returns a validated, frozen ResumeBatcherConfig. Invalid values raise
    pydantic.ValidationError here, once, instead of surfacing mid-run.
    """
    config_data = load_yaml(default_path)
    config_data = merge_dicts(config_data, load_yaml(local_path))
    config_data = merge_dicts(config_data, expand_dotted(overrides or {}))

    config = ResumeBatcherConfig.from_dict(config_data)
    logger.debug("Resolved configuration: %s", config.model_dump())
    return config
