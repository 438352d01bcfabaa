import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import UpscalerConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "HOST": "server.host",
    "PORT": "server.port",
    "HOST_URL": "server.base_url",
    "DATABASE_URL": "storage.database_url",
    "PROCESS_DIR": "storage.process_dir",
    "CONCURRENCY_QUEUE": "queue.concurrency",
    "DOWNLOAD_CONCURRENCY": "fetch.concurrency",
    "DOWNLOAD_TIMEOUT_S": "fetch.timeout_s",
    "HTTP_PROXY_URL": "fetch.proxy_url",
    "USER_AGENT": "fetch.user_agent",
    "REALCUGAN_PATH": "upscale.executable",
    "MODELS_PATH": "upscale.models_path",
    "UPSCALE_CONCURRENCY": "upscale.concurrency",
    "UPSCALE_SCALE": "upscale.scale",
    "UPSCALE_DENOISE": "upscale.denoise",
    "UPSCALE_TIMEOUT_S": "upscale.timeout_s",
    "KILL_GRACE_PERIOD_S": "upscale.kill_grace_period_s",
    "LOG_LEVEL": "logging.level",
    "LOG_FORMAT_JSON": "logging.json_format",
}


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


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Translate flat environment variables into a nested override dict.

    Values stay strings; pydantic coerces them when the config is validated.
    Empty strings are ignored so ``FOO=`` does not clobber a YAML value.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for env_name, path in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        section, key = path.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> UpscalerConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic UpscalerConfig model.

    Raises:
        pydantic.ValidationError: if any layer carries an invalid value
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = UpscalerConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
