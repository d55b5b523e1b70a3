"""Data files shipped with the moderator: rules.yaml and common_words.txt."""

from importlib import resources
from pathlib import Path


def data_path(name: str) -> Path:
    """Filesystem path of a bundled data file, wherever the package is installed."""
    return Path(resources.files(__name__) / name)
