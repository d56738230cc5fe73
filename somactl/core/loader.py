"""Loading and validation of the bundled catalogue and the user settings file."""

from __future__ import annotations

import functools
import json
import logging
import os
from dataclasses import dataclass, fields, replace
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validators

from somactl.core.errors import CatalogueError, SettingsError
from somactl.core.model import ClientSettings

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


class _DuplicateKeyError(yaml.YAMLError):
    pass


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise _DuplicateKeyError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class Catalogue:
    """Bluetooth SIG names bundled with the package."""

    version: int
    companies: Mapping[str, str]
    services: Mapping[str, str]
    characteristics: Mapping[str, str]


@dataclass(frozen=True)
class LoadedSettings:
    settings: ClientSettings
    device: str | None
    source: Path | None


def _load_schema_validator(name: str) -> Any:
    schema_text = resources.files("somactl.schemas").joinpath(name).read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path | Traversable, error: type[Exception]) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise error(f"Could not read {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise error(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise error(f"{path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], schema: str, source: Path | Traversable, error: type[Exception]) -> None:
    validator = _load_schema_validator(schema)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise error(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise SettingsError(f"{context} must be boolean true/false")


def _build_catalogue(doc: dict[str, Any], source: Path | Traversable) -> Catalogue:
    _validate(doc, "definitions.schema.json", source, CatalogueError)
    return Catalogue(
        version=int(doc["version"]),
        companies=MappingProxyType({str(k).upper(): v for k, v in doc["companies"].items()}),
        services=MappingProxyType({str(k).upper(): v for k, v in doc["services"].items()}),
        characteristics=MappingProxyType(
            {str(k).upper(): v for k, v in doc["characteristics"].items()}
        ),
    )


@functools.lru_cache(maxsize=1)
def load_catalogue() -> Catalogue:
    """Load the bundled definitions catalogue; the result is cached."""
    path = resources.files("somactl.data").joinpath("bt_definitions.yaml")
    catalogue = _build_catalogue(_read_yaml(path, CatalogueError), path)
    LOGGER.debug(
        "catalogue v%d: %d companies, %d services, %d characteristics",
        catalogue.version,
        len(catalogue.companies),
        len(catalogue.services),
        len(catalogue.characteristics),
    )
    return catalogue


def settings_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "somactl/config.yaml"


def _build_settings(doc: dict[str, Any], source: Path, defaults: ClientSettings) -> LoadedSettings:
    _validate(doc, "settings.schema.json", source, SettingsError)
    values: dict[str, Any] = {}
    for settings_field in fields(ClientSettings):
        if settings_field.name not in doc:
            continue
        value = doc[settings_field.name]
        if settings_field.name == "allow_duplicates":
            value = _normalize_bool(value, context=f"{source}: allow_duplicates")
        elif settings_field.name in ("rssi", "retries"):
            value = int(value)
        else:
            value = float(value)
        values[settings_field.name] = value
    return LoadedSettings(
        settings=replace(defaults, **values),
        device=doc.get("device"),
        source=source,
    )


def load_settings(path: Path | None = None, defaults: ClientSettings | None = None) -> LoadedSettings:
    """Load client settings from `path` or the default config file.

    Values missing from the file are taken from `defaults`. A missing default
    file yields the defaults; a missing explicit path is an error.
    """
    defaults = defaults or ClientSettings()
    if path is None:
        path = settings_path()
        if not path.exists():
            return LoadedSettings(settings=defaults, device=None, source=None)
    loaded = _build_settings(_read_yaml(path, SettingsError), path, defaults)
    LOGGER.debug("settings from %s: %s", path, loaded.settings)
    return loaded
