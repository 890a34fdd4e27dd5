"""
Configuration Loader (``estimate_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``estimate_config.schema``.  Runtime callers go through
``estimate_config.get_active_config()``; seeding tooling calls
``load_formula_seeds()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from estimate_config.schema import FormulaSeed, KernelSettings, PricingDefaults

PACKAGE_DIR = Path(__file__).parent
DEFAULTS_FILE = PACKAGE_DIR / "defaults.yaml"
SEEDS_DIR = PACKAGE_DIR / "seeds"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_pricing_defaults(data: dict[str, Any] | None) -> PricingDefaults:
    data = data or {}
    return PricingDefaults(
        vat_base=data.get("vat_base", "subtotal_plus_markup"),
        rounding_mode=data.get("rounding_mode", "ROUND_HALF_UP"),
        decimal_places=int(data.get("decimal_places", 2)),
    )


def parse_settings(data: dict[str, Any]) -> KernelSettings:
    """
    Parse ``KernelSettings`` from a dict.

    Raises:
        KeyError: if ``database_url`` is missing.
        ValueError: if precision or scale is not a positive integer.
    """
    precision = int(data.get("evaluation_precision", 38))
    scale = int(data.get("result_scale", 9))
    if precision <= 0 or scale < 0:
        raise ValueError(
            f"Invalid numeric settings: precision={precision}, scale={scale}"
        )
    return KernelSettings(
        database_url=data["database_url"],
        echo_sql=bool(data.get("echo_sql", False)),
        evaluation_precision=precision,
        result_scale=scale,
        default_pricing_policy=parse_pricing_defaults(data.get("default_pricing_policy")),
        seed_files=tuple(data.get("seed_files", ())),
        checksum=compute_checksum(data),
    )


def load_settings(path: Path) -> KernelSettings:
    return parse_settings(load_yaml_file(path))


def parse_formula_seed(data: dict[str, Any], source_file: str = "") -> FormulaSeed:
    """
    Parse a ``FormulaSeed`` from a dict.

    The body keys (``inputs``, ``assignments``, ``outputs``) are passed
    through untouched; FormulaBody.from_dict validates them at publish time.

    Raises:
        KeyError: if ``key``, ``name`` or ``outputs`` is missing.
    """
    body = {
        "inputs": list(data.get("inputs", [])),
        "assignments": list(data.get("assignments", [])),
        "outputs": list(data["outputs"]),
    }
    return FormulaSeed(
        key=data["key"],
        name=data["name"],
        body=body,
        description=data.get("description"),
        category=data.get("category"),
        source_file=source_file,
    )


def load_formula_seeds(paths: list[Path] | None = None) -> list[FormulaSeed]:
    """
    Load formula seeds, sorted by key.

    Args:
        paths: Seed files to load.  Defaults to every ``*.yaml`` in the
            packaged ``seeds`` directory.

    Raises:
        ValueError: if two files declare the same key.
    """
    if paths is None:
        paths = sorted(SEEDS_DIR.glob("*.yaml"))

    seeds: dict[str, FormulaSeed] = {}
    for path in paths:
        seed = parse_formula_seed(load_yaml_file(path), source_file=path.name)
        if seed.key in seeds:
            raise ValueError(
                f"Duplicate formula seed key {seed.key!r} in "
                f"{seeds[seed.key].source_file} and {path.name}"
            )
        seeds[seed.key] = seed
    return [seeds[key] for key in sorted(seeds)]


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
