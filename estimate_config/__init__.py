"""
estimate_config -- single public entrypoint for estimate kernel configuration.

Responsibility:
    Provides the runtime way to obtain settings through
    ``get_active_config()``.  Other components do not read configuration
    files or environment variables directly.

Architecture position:
    Configuration -- sits beside ``estimate_kernel``.  The kernel never
    imports from ``estimate_config``; scripts and tests pass the settings
    they need into kernel constructors.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``KeyError`` / ``ValueError`` -- malformed settings.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``estimate_config_loaded`` log entry with the settings checksum.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

from estimate_config.loader import (
    DEFAULTS_FILE,
    compute_checksum,
    load_formula_seeds,
    load_settings,
)
from estimate_config.schema import FormulaSeed, KernelSettings, PricingDefaults

_logger = logging.getLogger("estimate_kernel.config")

CONFIG_ENV_VAR = "ESTIMATE_KERNEL_CONFIG"
DATABASE_URL_ENV_VAR = "DATABASE_URL"


def get_active_config(path: Path | str | None = None) -> KernelSettings:
    """
    Load the active kernel settings.

    Resolution order for the file: ``path``, then the
    ``ESTIMATE_KERNEL_CONFIG`` environment variable, then the packaged
    ``defaults.yaml``.  A ``DATABASE_URL`` environment variable overrides
    the file's database URL.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULTS_FILE
    settings = load_settings(Path(path))

    override = os.environ.get(DATABASE_URL_ENV_VAR)
    if override:
        settings = replace(settings, database_url=override)

    _logger.info(
        "estimate_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": settings.checksum,
            "seed_file_count": len(settings.seed_files),
        },
    )
    return settings


__all__ = [
    "FormulaSeed",
    "KernelSettings",
    "PricingDefaults",
    "compute_checksum",
    "get_active_config",
    "load_formula_seeds",
]
