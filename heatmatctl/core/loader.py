"""Configuration and device-variant loading for heatmatctl YAML files."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, fields
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from heatmatctl.core.errors import ConfigurationError, HeatmatError, VariantValidationError
from heatmatctl.core.model import DeviceIdentity, DeviceVariant, MatConfig, Timings

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_MAC_RE = re.compile(r"^[0-9A-F]{12}$")
_MAX_PAYLOAD_BYTES = 512
DEFAULT_VARIANT = "stepped"
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


class DuplicateKeyError(yaml.YAMLError):
    pass


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[Any, Any]:
    mapping: dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise DuplicateKeyError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedVariants:
    variants: dict[str, DeviceVariant]
    warnings: tuple[str, ...]


def _load_schema_validator(name: str) -> Any:
    schema_text = resources.files("heatmatctl.schemas").joinpath(name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _validate(doc: dict[str, Any], schema_name: str, source: Path | Traversable | str, error_cls: type[HeatmatError]) -> None:
    validator = _load_schema_validator(schema_name)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise error_cls(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def _variant_dirs() -> tuple[Path, Path]:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return _config_home() / "heatmatctl/variants", xdg_data / "heatmatctl/variants"


def default_config_path() -> Path:
    return _config_home() / "heatmatctl/config.yaml"


def _read_yaml(path: Path | Traversable, error_cls: type[HeatmatError]) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise error_cls(f"Could not read {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise error_cls(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise error_cls(f"{path} must contain a mapping at root")
    return loaded


def _normalize_hex(value: str, *, context: str, error_cls: type[HeatmatError]) -> bytes:
    normalized = value.strip().lower().replace(" ", "")
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if len(normalized) == 0:
        raise error_cls(f"{context} must not be empty")
    if len(normalized) % 2 != 0:
        raise error_cls(f"{context} must have even-length hex")
    if not _HEX_RE.match(normalized):
        raise error_cls(f"{context} must contain only [0-9a-f]")
    payload = bytes.fromhex(normalized)
    if len(payload) > _MAX_PAYLOAD_BYTES:
        raise error_cls(f"{context} exceeds max payload size {_MAX_PAYLOAD_BYTES} bytes")
    return payload


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigurationError(f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string")
    return normalized


def _normalize_mac(value: str) -> str:
    compact = value.strip().upper().replace(":", "").replace("-", "")
    if not _MAC_RE.match(compact):
        raise ConfigurationError(f"mac_address '{value}' is not a 6-byte Bluetooth address")
    return ":".join(compact[i : i + 2] for i in range(0, 12, 2))


def _build_variant(doc: dict[str, Any], source: Path | Traversable) -> DeviceVariant:
    if isinstance(doc.get("levels"), dict):
        doc = {**doc, "levels": {str(k): v for k, v in doc["levels"].items()}}
    _validate(doc, "variant.schema.json", source, VariantValidationError)

    levels = {int(level): float(celsius) for level, celsius in doc["levels"].items()}
    if 0 not in levels:
        raise VariantValidationError(f"Variant '{doc['id']}' in {source} must define level 0 (off)")
    if any(level > 0xFF for level in levels):
        raise VariantValidationError(f"Variant '{doc['id']}' in {source} has a level above 255")

    timer_off_packet = None
    if "timer_off_packet" in doc:
        timer_off_packet = _normalize_hex(
            doc["timer_off_packet"],
            context=f"{doc['id']}.timer_off_packet",
            error_cls=VariantValidationError,
        )

    return DeviceVariant(
        id=doc["id"],
        name=doc["name"],
        levels=levels,
        off_at_or_below=float(doc["off_at_or_below"]),
        default_heat_temperature=float(doc["default_heat_temperature"]),
        max_timer_hours=int(doc.get("max_timer_hours", 15)),
        timer_off_packet=timer_off_packet,
    )


def _iter_packaged_variant_paths() -> list[Traversable]:
    variant_root = resources.files("heatmatctl.variants")
    return [item for item in variant_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_variant_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _variant_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_variants() -> LoadedVariants:
    variants: dict[str, DeviceVariant] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_variant_paths(), key=lambda p: p.name):
        doc = _read_yaml(path, VariantValidationError)
        variant = _build_variant(doc, path)
        variants[variant.id] = variant

    for path in _iter_user_variant_paths():
        doc = _read_yaml(path, VariantValidationError)
        variant = _build_variant(doc, path)
        if variant.id in variants:
            warning = f"User variant '{variant.id}' overrides packaged variant"
            LOGGER.warning(warning)
            warnings.append(warning)
        variants[variant.id] = variant

    return LoadedVariants(variants=variants, warnings=tuple(warnings))


def _build_timings(doc: dict[str, Any]) -> Timings:
    overrides: dict[str, Any] = dict(doc.get("timings", {}))
    if "scan_interval_sec" in doc:
        overrides.setdefault("scan_interval_s", doc["scan_interval_sec"])
    known = {f.name for f in fields(Timings)}
    kwargs = {key: (int(value) if key == "write_retries" else float(value)) for key, value in overrides.items() if key in known}
    return Timings(**kwargs)


def build_config(doc: dict[str, Any], *, source: str = "<config>", variants: dict[str, DeviceVariant] | None = None) -> MatConfig:
    _validate(doc, "config.schema.json", source, ConfigurationError)

    if variants is None:
        variants = load_variants().variants
    variant_id = doc.get("variant", DEFAULT_VARIANT)
    variant = variants.get(variant_id)
    if variant is None:
        available = ", ".join(sorted(variants))
        raise ConfigurationError(f"Unknown variant '{variant_id}' in {source}. Available: {available}")

    init_payload = None
    if doc.get("init_packet_hex"):
        init_payload = _normalize_hex(doc["init_packet_hex"], context="init_packet_hex", error_cls=ConfigurationError)

    set_char_uuid = None
    if doc.get("char_set_uuid"):
        set_char_uuid = _normalize_uuid(doc["char_set_uuid"], context="char_set_uuid")

    identity = DeviceIdentity(
        address=_normalize_mac(doc["mac_address"]),
        service_uuid=_normalize_uuid(doc["service_uuid"], context="service_uuid"),
        temp_char_uuid=_normalize_uuid(doc["char_temp_uuid"], context="char_temp_uuid"),
        timer_char_uuid=_normalize_uuid(doc["char_timer_uuid"], context="char_timer_uuid"),
        set_char_uuid=set_char_uuid,
        init_payload=init_payload,
        name=doc.get("name", "Heating Mat"),
        adapter_id=doc.get("adapter_id", "hci0"),
    )
    return MatConfig(identity=identity, variant=variant, timings=_build_timings(doc))


def load_config(path: Path | None = None) -> MatConfig:
    config_path = path or default_config_path()
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file {config_path} does not exist")
    doc = _read_yaml(config_path, ConfigurationError)
    return build_config(doc, source=str(config_path))
