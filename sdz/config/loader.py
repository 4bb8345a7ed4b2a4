import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Flat keys at the root are accepted as watch settings
    for key in ("watch_root", "output_root"):
        if key in data:
            data.setdefault("watch", {})[key] = data.pop(key)

    return AppConfig(**data)
