"""Layered YAML configuration and runtime environment detection::

    from clonal_growth.config import get_typed_config

    chain_length = get_typed_config().get("sampler.chain_length", 2000)
"""

from __future__ import annotations

from clonal_growth.config.environment import detect_cpu_count, detect_platform
from clonal_growth.config.settings import get_typed_config, platform_overlay

__all__ = [
    "detect_cpu_count",
    "detect_platform",
    "get_typed_config",
    "platform_overlay",
]
