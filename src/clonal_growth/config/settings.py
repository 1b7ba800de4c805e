"""Locate and load the layered YAML configuration.

``config/`` sits at the project root next to ``src/``; the overlay file is
chosen from the platform reported by :func:`detect_platform`.
"""

from __future__ import annotations

from pathlib import Path

from clonal_growth.config.environment import detect_platform
from clonal_growth.domain.models import AppConfig

# src/clonal_growth/config/settings.py -> project root
_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_DEFAULT_CONFIG_DIR = _PROJECT_ROOT / "config"

_PLATFORM_OVERLAYS: dict[str, str] = {"slurm": "slurm.yaml"}


def platform_overlay(config_dir: str | Path) -> Path | None:
    """Overlay file for the current platform, or ``None`` on a workstation."""
    name = _PLATFORM_OVERLAYS.get(detect_platform())
    return Path(config_dir) / name if name else None


def get_typed_config(config_dir: str | Path | None = None) -> AppConfig:
    """Load ``default.yaml``, the platform overlay and ``CGR_`` overrides.

    Parameters
    ----------
    config_dir:
        Directory holding the YAML files; the project's ``config/`` when
        omitted.

    Returns
    -------
    AppConfig
        Not cached: environment overrides are re-read on every call.
    """
    base = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    return AppConfig.load(
        default_path=base / "default.yaml",
        overlay_path=platform_overlay(base),
        env_prefix="CGR_",
    )
