import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from .models import FileJobsConfig

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


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> FileJobsConfig:
    """
    Resolve config: Default < Local (or --config file) < CLI
    Returns validated Pydantic FileJobsConfig model.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    override_path = Path(config_path) if config_path else LOCAL_CONFIG_PATH
    config_data = merge_dicts(config_data, load_yaml(override_path))

    config = FileJobsConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
