"""Loading, parsing and rewriting of network configuration files."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from .errors import CNIError, NoConfigsFoundError, NotFoundError

_ESCAPES = (
    ("&", "\\u0026"),
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


@dataclass
class NetConf:
    """The fields of a plugin configuration that the runtime itself looks at."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    capabilities: dict[str, bool] = field(default_factory=dict)
    dns: dict[str, Any] = field(default_factory=dict)


@dataclass
class NetworkConfig:
    """One plugin configuration: the parsed fields and the raw JSON bytes."""

    network: NetConf
    raw: bytes


@dataclass
class NetworkConfigList:
    """A chain of plugin configurations sharing one network name and version."""

    name: str
    cni_version: str = ""
    disable_check: bool = False
    plugins: list[NetworkConfig] = field(default_factory=list)
    raw: bytes = b""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON value {name}")


def _unmarshal(data: bytes | str) -> Any:
    return json.loads(data, parse_constant=_reject_constant)


def _marshal(value: Any) -> bytes:
    """Encode compactly with sorted keys and HTML-safe escapes."""
    text = json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )
    for char, escape in _ESCAPES:
        text = text.replace(char, escape)
    return text.encode("utf-8")


def _json_kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _type_name(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "float64"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "[]interface {}"
    return "map[string]interface {}"


def _string_field(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"cannot unmarshal {_json_kind(value)} into field {key} of type string")
    return value


def _capabilities_field(obj: Mapping[str, Any]) -> dict[str, bool]:
    value = obj.get("capabilities")
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(
            f"cannot unmarshal {_json_kind(value)} into field capabilities of type map[string]bool"
        )
    for key, enabled in value.items():
        if enabled is not None and not isinstance(enabled, bool):
            raise ValueError(
                f"cannot unmarshal {_json_kind(enabled)} into field capabilities.{key} of type bool"
            )
    return {key: bool(enabled) for key, enabled in value.items()}


def _dns_field(obj: Mapping[str, Any]) -> dict[str, Any]:
    value = obj.get("dns")
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"cannot unmarshal {_json_kind(value)} into field dns of type object")
    return value


def _net_conf_from_json(obj: Any) -> NetConf:
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise ValueError(f"cannot unmarshal {_json_kind(obj)} into a network configuration")
    return NetConf(
        cni_version=_string_field(obj, "cniVersion"),
        name=_string_field(obj, "name"),
        type=_string_field(obj, "type"),
        capabilities=_capabilities_field(obj),
        dns=_dns_field(obj),
    )


def _as_bytes(data: bytes | bytearray | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def conf_from_bytes(data: bytes | str) -> NetworkConfig:
    """Parse a single plugin configuration; it must name a plugin 'type'."""
    raw = _as_bytes(data)
    try:
        network = _net_conf_from_json(_unmarshal(raw))
    except ValueError as exc:
        raise CNIError(f"error parsing configuration: {exc}") from exc
    if not network.type:
        raise CNIError("error parsing configuration: missing 'type'")
    return NetworkConfig(network=network, raw=raw)


def _read(filename: str | os.PathLike[str]) -> bytes:
    try:
        with open(filename, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise CNIError(f"error reading {os.fspath(filename)}: {exc}") from exc


def conf_from_file(filename: str | os.PathLike[str]) -> NetworkConfig:
    """Read and parse a single plugin configuration file."""
    return conf_from_bytes(_read(filename))


def _list_error(message: str) -> CNIError:
    return CNIError(f"error parsing configuration list: {message}")


def _parse_disable_check(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise _list_error(f"invalid disableCheck type {_type_name(value)}")
    lowered = value.lower()
    if lowered == "false":
        return False
    if lowered == "true":
        return True
    quoted = json.dumps(value, ensure_ascii=False)
    raise _list_error(f"invalid disableCheck value {quoted}")


def conf_list_from_bytes(data: bytes | str) -> NetworkConfigList:
    """Parse a configuration list holding a name, a version and its plugins."""
    raw = _as_bytes(data)
    try:
        raw_list = _unmarshal(raw)
    except ValueError as exc:
        raise _list_error(str(exc)) from exc
    if raw_list is None:
        raw_list = {}
    if not isinstance(raw_list, dict):
        raise _list_error(f"cannot unmarshal {_json_kind(raw_list)} into a configuration list")

    if "name" not in raw_list:
        raise _list_error("no name")
    name = raw_list["name"]
    if not isinstance(name, str):
        raise _list_error(f"invalid name type {_type_name(name)}")

    cni_version = ""
    if "cniVersion" in raw_list:
        cni_version = raw_list["cniVersion"]
        if not isinstance(cni_version, str):
            raise _list_error(f"invalid cniVersion type {_type_name(cni_version)}")

    disable_check = False
    if "disableCheck" in raw_list:
        disable_check = _parse_disable_check(raw_list["disableCheck"])

    if "plugins" not in raw_list:
        raise _list_error("no 'plugins' key")
    plugins = raw_list["plugins"]
    if not isinstance(plugins, list):
        raise _list_error(f"invalid 'plugins' type {_type_name(plugins)}")
    if not plugins:
        raise _list_error("no plugins in list")

    parsed = []
    for index, plugin in enumerate(plugins):
        try:
            parsed.append(conf_from_bytes(_marshal(plugin)))
        except CNIError as exc:
            raise CNIError(f"failed to parse plugin config {index}: {exc}") from exc

    return NetworkConfigList(
        name=name,
        cni_version=cni_version,
        disable_check=disable_check,
        plugins=parsed,
        raw=raw,
    )


def conf_list_from_file(filename: str | os.PathLike[str]) -> NetworkConfigList:
    """Read and parse a configuration list file."""
    return conf_list_from_bytes(_read(filename))


def _extension(name: str) -> str:
    position = name.rfind(".")
    return name[position:] if position >= 0 else ""


def conf_files(directory: str | os.PathLike[str], extensions: list[str]) -> list[str]:
    """List the regular entries of ``directory`` whose extension is one of ``extensions``.

    A missing directory yields an empty list; subdirectories are not searched.
    """
    directory = os.fspath(directory)
    try:
        with os.scandir(directory) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
    except FileNotFoundError:
        return []
    return [
        os.path.join(directory, entry.name)
        for entry in entries
        if not entry.is_dir(follow_symlinks=False)
        for ext in extensions
        if _extension(entry.name) == ext
    ]


def load_conf(directory: str | os.PathLike[str], name: str) -> NetworkConfig:
    """Find the first .conf or .json file (in name order) declaring network ``name``."""
    files = conf_files(directory, [".conf", ".json"])
    if not files:
        raise NoConfigsFoundError(os.fspath(directory))
    for conf_file in sorted(files):
        conf = conf_from_file(conf_file)
        if conf.network.name == name:
            return conf
    raise NotFoundError(os.fspath(directory), name)


def load_conf_list(directory: str | os.PathLike[str], name: str) -> NetworkConfigList:
    """Find the configuration list named ``name``.

    Falls back to a single configuration file of the same name, wrapped in a list.
    """
    files = sorted(conf_files(directory, [".conflist"]))
    for conf_file in files:
        conf = conf_list_from_file(conf_file)
        if conf.name == name:
            return conf

    try:
        single = load_conf(directory, name)
    except NoConfigsFoundError as exc:
        if files:
            raise NotFoundError(os.fspath(directory), name) from exc
        raise
    return conf_list_from_conf(single)


def inject_conf(original: NetworkConfig, new_values: Mapping[str, Any]) -> NetworkConfig:
    """Return a new configuration with top-level keys set to the given values."""
    try:
        config = _unmarshal(original.raw)
    except ValueError as exc:
        raise CNIError(f"unmarshal existing network bytes: {exc}") from exc
    if not isinstance(config, dict):
        raise CNIError(
            f"unmarshal existing network bytes: cannot unmarshal {_json_kind(config)} into an object"
        )

    for key, value in new_values.items():
        if key == "":
            raise CNIError("keys cannot be empty")
        if value is None:
            raise CNIError(f"key '{key}' value must not be nil")
        config[key] = value

    try:
        new_bytes = _marshal(config)
    except (TypeError, ValueError) as exc:
        raise CNIError(str(exc)) from exc
    return conf_from_bytes(new_bytes)


def conf_list_from_conf(original: NetworkConfig) -> NetworkConfigList:
    """Wrap a single configuration into a list holding it as the only plugin."""
    try:
        raw_config = _unmarshal(original.raw)
    except ValueError as exc:
        raise CNIError(str(exc)) from exc
    if not isinstance(raw_config, dict):
        raise CNIError(f"cannot unmarshal {_json_kind(raw_config)} into an object")

    raw_list = {
        "name": original.network.name,
        "cniVersion": original.network.cni_version,
        "plugins": [raw_config],
    }
    return conf_list_from_bytes(_marshal(raw_list))