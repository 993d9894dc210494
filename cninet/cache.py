"""On-disk cache of plugin results and the runtime arguments that produced them."""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from .errors import CNIError

CACHE_DIR = "/var/lib/cni"
CNI_CACHE_V1 = "cniCacheV1"


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass
class RuntimeConf:
    """Arguments of one plugin invocation apart from the network configuration."""

    container_id: str = ""
    netns: str = ""
    if_name: str = ""
    args: list[tuple[str, str]] = field(default_factory=list)
    capability_args: dict[str, Any] = field(default_factory=dict)
    cache_dir: str = ""


@dataclass
class NetworkAttachment:
    """A container interface attached to a network, as recorded in the cache."""

    container_id: str
    network: str
    if_name: str
    config: bytes
    netns: str = ""
    cni_args: list[tuple[str, str]] = field(default_factory=list)
    capability_args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GCAttachment:
    """An attachment that garbage collection must leave in place."""

    container_id: str
    if_name: str

    def to_json(self) -> dict[str, str]:
        return {"containerID": self.container_id, "ifname": self.if_name}


@dataclass
class GCArgs:
    """Arguments to a garbage collection pass."""

    valid_attachments: list[GCAttachment] = field(default_factory=list)


@dataclass
class _CachedInfo:
    kind: str
    container_id: str
    config: bytes
    if_name: str
    network_name: str
    netns: str = ""
    cni_args: list[tuple[str, str]] | None = None
    capability_args: dict[str, Any] | None = None
    raw_result: dict[str, Any] | None = None

    def to_json(self) -> bytes:
        obj: dict[str, Any] = {
            "kind": self.kind,
            "containerId": self.container_id,
            "config": base64.b64encode(self.config).decode("ascii"),
            "ifName": self.if_name,
            "networkName": self.network_name,
        }
        if self.netns:
            obj["netns"] = self.netns
        if self.cni_args:
            obj["cniArgs"] = [list(pair) for pair in self.cni_args]
        if self.capability_args:
            obj["capabilityArgs"] = self.capability_args
        if self.raw_result:
            obj["result"] = self.raw_result
        return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> _CachedInfo:
        obj = json.loads(data)
        if obj is None:
            obj = {}
        if not isinstance(obj, dict):
            raise ValueError("cannot unmarshal non-object into cached info")

        def text(key: str) -> str:
            value = obj.get(key)
            if value is None:
                return ""
            if not isinstance(value, str):
                raise ValueError(f"cannot unmarshal field {key} of type string")
            return value

        def mapping(key: str) -> dict[str, Any] | None:
            value = obj.get(key)
            if value is None:
                return None
            if not isinstance(value, dict):
                raise ValueError(f"cannot unmarshal field {key} of type object")
            return value

        config_text = text("config")
        try:
            config = base64.b64decode(config_text, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"illegal base64 data in field config: {exc}") from exc

        cni_args = None
        raw_args = obj.get("cniArgs")
        if raw_args is not None:
            if not isinstance(raw_args, list):
                raise ValueError("cannot unmarshal field cniArgs of type array")
            cni_args = []
            for pair in raw_args:
                if (
                    not isinstance(pair, list)
                    or len(pair) != 2
                    or not all(isinstance(item, str) for item in pair)
                ):
                    raise ValueError("cannot unmarshal field cniArgs of type [2]string")
                cni_args.append((pair[0], pair[1]))

        return cls(
            kind=text("kind"),
            container_id=text("containerId"),
            config=config,
            if_name=text("ifName"),
            network_name=text("networkName"),
            netns=text("netns"),
            cni_args=cni_args,
            capability_args=mapping("capabilityArgs"),
            raw_result=mapping("result"),
        )


def _read_optional(path: str) -> bytes | None:
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError:
        return None


class ResultCache:
    """Stores plugin results per network, container and interface under a directory."""

    def __init__(self, directory: str | os.PathLike[str] | None = None) -> None:
        self.directory = os.fspath(directory) if directory else ""

    def _base_dir(self, rt: RuntimeConf | None) -> str:
        if self.directory:
            return self.directory
        if rt is not None and rt.cache_dir:
            return rt.cache_dir
        return CACHE_DIR

    def file_path(self, net_name: str, rt: RuntimeConf) -> str:
        """Return the cache file for this network and attachment."""
        if not net_name or not rt.container_id or not rt.if_name:
            raise CNIError(
                f"cache file path requires network name ({_quote(net_name)}), "
                f"container ID ({_quote(rt.container_id)}), "
                f"and interface name ({_quote(rt.if_name)})"
            )
        return os.path.join(
            self._base_dir(rt), "results", f"{net_name}-{rt.container_id}-{rt.if_name}"
        )

    def add(
        self,
        result: Mapping[str, Any] | None,
        config: bytes,
        net_name: str,
        rt: RuntimeConf,
    ) -> None:
        """Record a result together with the configuration and runtime arguments."""
        raw_result = json.loads(json.dumps(result)) if result is not None else None
        cached = _CachedInfo(
            kind=CNI_CACHE_V1,
            container_id=rt.container_id,
            config=bytes(config),
            if_name=rt.if_name,
            network_name=net_name,
            netns=rt.netns,
            cni_args=list(rt.args),
            capability_args=dict(rt.capability_args) if rt.capability_args else None,
            raw_result=raw_result,
        )
        data = cached.to_json()
        path = self.file_path(net_name, rt)
        os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    def delete(self, net_name: str, rt: RuntimeConf) -> None:
        """Remove the cache entry; a missing entry or incomplete arguments are ignored."""
        try:
            path = self.file_path(net_name, rt)
        except CNIError:
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def get_config(
        self, net_name: str, rt: RuntimeConf
    ) -> tuple[bytes, RuntimeConf] | None:
        """Return the cached configuration and a copy of ``rt`` updated from the cache.

        Returns None when nothing is cached.
        """
        path = self.file_path(net_name, rt)
        data = _read_optional(path)
        if data is None:
            return None
        try:
            cached = _CachedInfo.from_json(data)
        except ValueError as exc:
            raise CNIError(
                f"failed to unmarshal cached network {_quote(net_name)} config: {exc}"
            ) from exc
        if cached.kind != CNI_CACHE_V1:
            raise CNIError(
                f"read cached network {_quote(net_name)} config has wrong kind: {cached.kind}"
            )
        new_rt = replace(rt, capability_args=dict(cached.capability_args or {}))
        if cached.cni_args is not None:
            new_rt.args = list(cached.cni_args)
        return cached.config, new_rt

    def get_result(self, net_name: str, rt: RuntimeConf) -> dict[str, Any] | None:
        """Return the cached result as a JSON object, or None when nothing is cached.

        Files written in the older format, holding only the bare result, are read too.
        """
        path = self.file_path(net_name, rt)
        data = _read_optional(path)
        if data is None:
            return None
        try:
            cached = _CachedInfo.from_json(data)
        except ValueError:
            cached = None
        if cached is None or cached.kind != CNI_CACHE_V1:
            return self._legacy_result(data)
        return cached.raw_result

    @staticmethod
    def _legacy_result(data: bytes) -> dict[str, Any]:
        try:
            result = json.loads(data)
        except ValueError as exc:
            raise CNIError(f"decoding version from network config: {exc}") from exc
        if not isinstance(result, dict):
            raise CNIError("decoding version from network config: result is not an object")
        return result

    def attachments(self, container_id: str = "") -> list[NetworkAttachment]:
        """List cached attachments in file name order, filtered by container when given."""
        directory = os.path.join(self._base_dir(None), "results")
        names = sorted(entry.name for entry in os.scandir(directory))

        found = []
        for name in names:
            if container_id:
                part = f"-{container_id}-"
                position = name.find(part)
                if position <= 0 or position + len(part) >= len(name):
                    continue
            data = _read_optional(os.path.join(directory, name))
            if data is None:
                continue
            try:
                cached = _CachedInfo.from_json(data)
            except ValueError:
                continue
            if cached.kind != CNI_CACHE_V1:
                continue
            if container_id and cached.container_id != container_id:
                continue
            if not cached.if_name or not cached.network_name:
                continue
            found.append(
                NetworkAttachment(
                    container_id=cached.container_id,
                    network=cached.network_name,
                    if_name=cached.if_name,
                    config=cached.config,
                    netns=cached.netns,
                    cni_args=list(cached.cni_args or []),
                    capability_args=dict(cached.capability_args or {}),
                )
            )
        return found