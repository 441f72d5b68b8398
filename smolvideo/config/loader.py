import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Older files kept quality defaults under 'defaults'
    if "defaults" in data and "quality" not in data:
        data["quality"] = data.pop("defaults")

    return AppConfig(**data)
