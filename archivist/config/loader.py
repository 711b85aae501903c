import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    # A bare list under subtitles is shorthand for its extensions
    subtitles = data.get("subtitles")
    if isinstance(subtitles, list):
        data["subtitles"] = {"extensions": subtitles}

    return AppConfig(**data)


def load_config_or_default(config_path: Path, required: bool = False) -> AppConfig:
    """Like load_config, but returns defaults for a missing optional file."""
    if not config_path.exists() and not required:
        return AppConfig()
    return load_config(config_path)
