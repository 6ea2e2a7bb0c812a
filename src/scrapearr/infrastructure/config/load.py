"""Layered configuration loading: defaults < YAML < env vars < CLI.

Each layer is brought into the sectioned shape of ``config.yaml`` before
merging, so a flat key like ``log_level`` and its sectioned form
``logging.level`` replace each other rather than both reaching validation.
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv
from pydantic import AliasChoices, AliasPath, BaseModel

from .defaults import DEFAULT_CONFIG
from .schema import AppConfig, EnvOverrides


def _flat_keys() -> dict[str, tuple[str, str]]:
    """Map every flat key to its ``(section, key)`` position.

    Read off the schema: fields aliased to a two-part ``AliasPath``
    (``log_level`` -> ``logging.level``) and ``<section>_<field>`` for
    the nested sections (``pairing_start_port`` -> ``pairing.start_port``).
    """
    keys: dict[str, tuple[str, str]] = {}
    for name, info in AppConfig.model_fields.items():
        alias = info.validation_alias
        if isinstance(alias, AliasChoices):
            for choice in alias.choices:
                if isinstance(choice, AliasPath) and len(choice.path) == 2:
                    section, key = choice.path
                    keys[name] = (str(section), str(key))
        annotation = info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            for field_name in annotation.model_fields:
                keys[f"{name}_{field_name}"] = (name, field_name)
    return keys


_FLAT_KEYS = _flat_keys()
_SECTIONS = frozenset(section for section, _ in _FLAT_KEYS.values())
_TOP_LEVEL = frozenset(AppConfig.model_fields) - _SECTIONS - set(_FLAT_KEYS)


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into ``base`` in place; dict + dict merges recursively."""
    for key, value in override.items():
        if isinstance(base.get(key), dict) and isinstance(value, Mapping):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _sectioned(layer: Mapping[str, Any]) -> dict[str, Any]:
    # Flat keys are applied after section blocks and win inside one layer
    out: dict[str, Any] = {}
    for key, value in layer.items():
        if key in _SECTIONS and isinstance(value, Mapping):
            out.setdefault(key, {}).update(value)
        elif key in _TOP_LEVEL:
            out[key] = value
    for key, value in layer.items():
        if key in _FLAT_KEYS:
            section, section_key = _FLAT_KEYS[key]
            out.setdefault(section, {})[section_key] = value
    return out


def _read_yaml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(config_path)
    parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError(f"Config YAML must be a mapping, got: {type(parsed)!r}")
    return parsed


def load_config(
    *,
    config_path: Path | None = None,
    dotenv_path: Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """
    Build the validated AppConfig.

    ``cli_overrides`` accepts flat keys (``cache_dir``,
    ``aggregator_max_results``) or sectioned blocks, the same shapes a
    YAML file may use. A ``.env`` file feeds the environment layer and
    never overrides variables that are already set. Nothing is written
    to disk.

    Raises:
        FileNotFoundError: ``config_path`` or ``dotenv_path`` does not exist.
        ValueError: The YAML document is not a mapping.
        pydantic.ValidationError: The merged values are invalid.
    """
    if dotenv_path is not None:
        if not dotenv_path.exists():
            raise FileNotFoundError(dotenv_path)
        load_dotenv(dotenv_path, override=False)

    layers: list[Mapping[str, Any]] = [deepcopy(DEFAULT_CONFIG)]
    if config_path is not None:
        layers.append(_read_yaml_config(config_path))
    layers.append(EnvOverrides().to_update_dict())
    layers.append(cli_overrides or {})

    merged: dict[str, Any] = {}
    for layer in layers:
        _deep_merge(merged, _sectioned(layer))
    return AppConfig.model_validate(merged)
