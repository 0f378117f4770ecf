"""Configuration loading and merging for the gallery server."""

from dataclasses import asdict, dataclass, fields
from pathlib import Path

import yaml


DEFAULT_CONFIG_PATH = "homegallery.yaml"


@dataclass
class GalleryConfig:
    # Backing JSON file for the service registry
    data_file: str = "db/services.json"

    # HTTP API bind address
    host: str = "0.0.0.0"
    port: int = 4568

    # Seconds between background health-check cycles
    check_interval: int = 60

    # Hard timeout (seconds) for a single HTTP probe
    probe_timeout: int = 5

    # Populate an empty registry with the example services on startup
    seed_samples: bool = False

    log_level: str = "INFO"

    @property
    def data_path(self) -> Path:
        return Path(self.data_file)


def load_config(path: str | Path) -> GalleryConfig:
    """Load a GalleryConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")

    valid_fields = {f.name for f in fields(GalleryConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return GalleryConfig(**filtered)


def merge_cli_args(config: GalleryConfig, args) -> GalleryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(GalleryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: GalleryConfig) -> str:
    """Serialize a GalleryConfig to YAML."""
    return yaml.dump(asdict(config), default_flow_style=False, sort_keys=False)
