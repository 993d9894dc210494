"""Running chains of network plugins and keeping track of their results."""

from __future__ import annotations

import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any, Sequence

from .cache import GCArgs, NetworkAttachment, ResultCache, RuntimeConf
from .conf import NetConf, NetworkConfig, NetworkConfigList, inject_conf
from .errors import CheckNotSupportedError, CNIError, join_errors
from .versions import greater_than_or_equal_to

KNOWN_RESULT_VERSIONS = ("0.1.0", "0.2.0", "0.3.0", "0.3.1", "0.4.0", "1.0.0", "1.1.0")
CURRENT_VERSION = "1.1.0"
LEGACY_VERSIONS = ["0.1.0", "0.2.0"]

ERR_INVALID_ENVIRONMENT_VARIABLES = 4
ERR_INVALID_NETWORK_CONFIG = 7

_VALID_ID = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9_.\-]*")
_MAX_IFNAME = 15


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class _TypedError(CNIError):
    """An error carrying a numeric code, a message and optional details."""

    def __init__(self, code: int, msg: str, details: str = "") -> None:
        self.code = code
        self.msg = msg
        self.details = details
        super().__init__(f"{msg}; {details}" if details else msg)


def _validate_container_id(container_id: str) -> None:
    if not container_id:
        raise _TypedError(ERR_INVALID_ENVIRONMENT_VARIABLES, "missing containerID")
    if not _VALID_ID.fullmatch(container_id):
        raise _TypedError(
            ERR_INVALID_ENVIRONMENT_VARIABLES, "invalid characters in containerID", container_id
        )


def _validate_network_name(name: str) -> None:
    if not name:
        raise _TypedError(ERR_INVALID_NETWORK_CONFIG, "missing network name")
    if not _VALID_ID.fullmatch(name):
        raise _TypedError(
            ERR_INVALID_NETWORK_CONFIG, "invalid characters found in network name", name
        )


def _validate_interface_name(if_name: str) -> None:
    code = ERR_INVALID_ENVIRONMENT_VARIABLES
    if not if_name:
        raise _TypedError(code, "interface name is empty")
    if len(if_name) > _MAX_IFNAME:
        raise _TypedError(
            code, "interface name is too long", "interface name should be less than 16 characters"
        )
    if if_name in (".", ".."):
        raise _TypedError(code, "interface name is . or ..")
    if any(ch in "/:" or ch.isspace() for ch in if_name):
        raise _TypedError(code, "interface name contains / or : or whitespace characters")


@dataclass
class PluginArgs:
    """The environment-borne arguments of one plugin invocation."""

    command: str
    container_id: str = ""
    netns: str = ""
    plugin_args: list[tuple[str, str]] = field(default_factory=list)
    if_name: str = ""
    path: str = ""

    def to_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            CNI_COMMAND=self.command,
            CNI_CONTAINERID=self.container_id,
            CNI_NETNS=self.netns,
            CNI_ARGS=";".join(f"{key}={value}" for key, value in self.plugin_args),
            CNI_IFNAME=self.if_name,
            CNI_PATH=self.path,
        )
        return env


class PluginExecutor:
    """Locates plugin executables and runs them."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def find_in_path(self, plugin: str, paths: Sequence[str]) -> str:
        """Return the first executable named ``plugin`` in the given directories."""
        if not paths:
            raise CNIError("no paths provided")
        for directory in paths:
            candidate = os.path.join(directory, plugin)
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        raise CNIError(f'failed to find plugin {_quote(plugin)} in path [{" ".join(paths)}]')

    def exec_plugin(self, plugin_path: str, stdin_data: bytes, args: PluginArgs) -> bytes:
        """Run a plugin and return its standard output; failures raise CNIError."""
        try:
            proc = subprocess.run(
                [plugin_path],
                input=stdin_data,
                env=args.to_env(),
                stdout=subprocess.PIPE,
                stderr=sys.stderr,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise CNIError("netplugin failed with no error message: timed out") from exc
        except OSError as exc:
            raise CNIError(f"netplugin failed: {exc}") from exc
        if proc.returncode == 0:
            return proc.stdout
        output = proc.stdout
        if not output.strip():
            raise CNIError(
                f"netplugin failed with no error message: exit status {proc.returncode}"
            )
        try:
            error = json.loads(output)
        except ValueError:
            error = None
        if not isinstance(error, dict):
            raise CNIError(f"netplugin failed: {_quote(output.decode('utf-8', 'replace'))}")
        raise _TypedError(
            int(error.get("code") or 0), str(error.get("msg", "")), str(error.get("details", ""))
        )

    def version_info(self, plugin_path: str) -> list[str]:
        """Ask a plugin which specification versions it supports."""
        stdin = json.dumps({"cniVersion": CURRENT_VERSION}).encode()
        output = self.exec_plugin(plugin_path, stdin, PluginArgs(command="VERSION"))
        if not output.strip():
            return list(LEGACY_VERSIONS)
        try:
            info = json.loads(output)
        except ValueError as exc:
            raise CNIError(f"decoding version info: {exc}") from exc
        versions = info.get("supportedVersions") if isinstance(info, dict) else None
        if not isinstance(versions, list) or not versions:
            raise CNIError("decoding version info: missing supportedVersions")
        return [str(version) for version in versions]


def plugin_description(net: NetConf | None) -> str:
    """Describe a plugin by type and, if set, name."""
    if net is None:
        return "<missing>"
    out = f"type={_quote(net.type)}"
    if net.name:
        out += f" name={_quote(net.name)}"
    return out


def inject_runtime_config(orig: NetworkConfig, rt: RuntimeConf) -> NetworkConfig:
    """Add capability arguments the plugin advertises under 'runtimeConfig'."""
    rc = {
        capability: rt.capability_args[capability]
        for capability, supported in orig.network.capabilities.items()
        if supported and capability in rt.capability_args
    }
    if rc:
        return inject_conf(orig, {"runtimeConfig": rc})
    return orig


def build_one_config(
    name: str,
    cni_version: str,
    orig: NetworkConfig,
    prev_result: dict[str, Any] | None,
    rt: RuntimeConf | None,
) -> NetworkConfig:
    """Build the stdin configuration for one plugin of a chain."""
    inject: dict[str, Any] = {"name": name, "cniVersion": cni_version}
    if prev_result is not None:
        inject["prevResult"] = prev_result
    conf = inject_conf(orig, inject)
    if rt is not None:
        return inject_runtime_config(conf, rt)
    return conf


def _as_version(result: dict[str, Any] | None, cni_version: str) -> dict[str, Any] | None:
    if result is None:
        return None
    found = result.get("cniVersion") or "0.1.0"
    if found not in KNOWN_RESULT_VERSIONS:
        raise CNIError(f"unsupported CNI result version {_quote(str(found))}")
    target = cni_version or "0.1.0"
    if target not in KNOWN_RESULT_VERSIONS:
        raise CNIError(
            f"failed to convert cached result to config version {_quote(cni_version)}: "
            f"unsupported CNI result version {_quote(target)}"
        )
    return {**result, "cniVersion": target}


class CNIConfig:
    """Runs plugins found in ``path`` and caches their results."""

    def __init__(
        self,
        path: Sequence[str],
        executor: PluginExecutor | None = None,
        cache_dir: str | os.PathLike[str] | None = None,
    ) -> None:
        self.path = list(path)
        self.executor = executor or PluginExecutor()
        self.cache = ResultCache(cache_dir)

    def _args(self, action: str, rt: RuntimeConf) -> PluginArgs:
        return PluginArgs(
            command=action,
            container_id=rt.container_id,
            netns=rt.netns,
            plugin_args=list(rt.args),
            if_name=rt.if_name,
            path=os.pathsep.join(self.path),
        )

    def _cached_result(self, net_name: str, cni_version: str, rt: RuntimeConf):
        try:
            return _as_version(self.cache.get_result(net_name, rt), cni_version)
        except CNIError as exc:
            raise CNIError(f"failed to get network {_quote(net_name)} cached result: {exc}") from exc

    def _add(self, name, cni_version, net, prev_result, rt):
        plugin_path = self.executor.find_in_path(net.network.type, self.path)
        _validate_container_id(rt.container_id)
        _validate_network_name(name)
        _validate_interface_name(rt.if_name)
        conf = build_one_config(name, cni_version, net, prev_result, rt)
        output = self.executor.exec_plugin(plugin_path, conf.raw, self._args("ADD", rt))
        try:
            result = json.loads(output)
        except ValueError as exc:
            raise CNIError(f"decoding plugin result: {exc}") from exc
        if not isinstance(result, dict):
            raise CNIError("decoding plugin result: result is not an object")
        return result

    def _run(self, command, name, cni_version, net, prev_result, rt) -> None:
        plugin_path = self.executor.find_in_path(net.network.type, self.path)
        conf = build_one_config(name, cni_version, net, prev_result, rt)
        self.executor.exec_plugin(plugin_path, conf.raw, self._args(command, rt))

    def _store(self, result, config, net_name, rt) -> None:
        try:
            self.cache.add(result, config, net_name, rt)
        except (CNIError, OSError) as exc:
            raise CNIError(f"failed to set network {_quote(net_name)} cached result: {exc}") from exc

    def add_network_list(self, net_list: NetworkConfigList, rt: RuntimeConf) -> dict[str, Any]:
        """Run every plugin with ADD, each receiving the previous result."""
        result = None
        for net in net_list.plugins:
            try:
                result = self._add(net_list.name, net_list.cni_version, net, result, rt)
            except CNIError as exc:
                raise CNIError(
                    f"plugin {plugin_description(net.network)} failed (add): {exc}"
                ) from exc
        self._store(result, net_list.raw, net_list.name, rt)
        return result

    def check_network_list(self, net_list: NetworkConfigList, rt: RuntimeConf) -> None:
        """Run every plugin with CHECK against the cached result."""
        if not greater_than_or_equal_to(net_list.cni_version, "0.4.0"):
            raise CheckNotSupportedError(net_list.cni_version)
        if net_list.disable_check:
            return
        cached = self._cached_result(net_list.name, net_list.cni_version, rt)
        for net in net_list.plugins:
            self._run("CHECK", net_list.name, net_list.cni_version, net, cached, rt)

    def del_network_list(self, net_list: NetworkConfigList, rt: RuntimeConf) -> None:
        """Run every plugin with DEL in reverse order, then drop the cache entry."""
        cached = None
        if greater_than_or_equal_to(net_list.cni_version, "0.4.0"):
            cached = self._cached_result(net_list.name, net_list.cni_version, rt)
        for net in reversed(net_list.plugins):
            try:
                self._run("DEL", net_list.name, net_list.cni_version, net, cached, rt)
            except CNIError as exc:
                raise CNIError(
                    f"plugin {plugin_description(net.network)} failed (delete): {exc}"
                ) from exc
        self._drop(net_list.name, rt)

    def _drop(self, net_name: str, rt: RuntimeConf) -> None:
        try:
            self.cache.delete(net_name, rt)
        except OSError:
            pass

    def get_network_list_cached_result(self, net_list, rt):
        """Return the cached result of the last ADD for the list, or None."""
        return _as_version(self.cache.get_result(net_list.name, rt), net_list.cni_version)

    def get_network_list_cached_config(self, net_list, rt):
        """Return (config bytes, updated RuntimeConf) from the cache, or None."""
        return self.cache.get_config(net_list.name, rt)

    def add_network(self, net: NetworkConfig, rt: RuntimeConf) -> dict[str, Any]:
        """Run a single plugin with ADD and cache its result."""
        result = self._add(net.network.name, net.network.cni_version, net, None, rt)
        self._store(result, net.raw, net.network.name, rt)
        return result

    def check_network(self, net: NetworkConfig, rt: RuntimeConf) -> None:
        """Run a single plugin with CHECK."""
        version = net.network.cni_version
        if not greater_than_or_equal_to(version, "0.4.0"):
            raise CheckNotSupportedError(version)
        cached = self._cached_result(net.network.name, version, rt)
        self._run("CHECK", net.network.name, version, net, cached, rt)

    def del_network(self, net: NetworkConfig, rt: RuntimeConf) -> None:
        """Run a single plugin with DEL and drop its cache entry."""
        version = net.network.cni_version
        cached = None
        if greater_than_or_equal_to(version, "0.4.0"):
            cached = self._cached_result(net.network.name, version, rt)
        self._run("DEL", net.network.name, version, net, cached, rt)
        self._drop(net.network.name, rt)

    def get_network_cached_result(self, net, rt):
        """Return the cached result of the last ADD for the network, or None."""
        return _as_version(self.cache.get_result(net.network.name, rt), net.network.cni_version)

    def get_network_cached_config(self, net, rt):
        """Return (config bytes, updated RuntimeConf) from the cache, or None."""
        return self.cache.get_config(net.network.name, rt)

    def get_cached_attachments(self, container_id: str = "") -> list[NetworkAttachment]:
        """List cached attachments, optionally for one container."""
        return self.cache.attachments(container_id)

    def _validate_plugin(self, plugin_name: str, expected_version: str) -> None:
        plugin_path = self.executor.find_in_path(plugin_name, self.path)
        expected_version = expected_version or "0.1.0"
        if expected_version not in self.executor.version_info(plugin_path):
            raise CNIError(
                f"plugin {plugin_name} does not support config version {_quote(expected_version)}"
            )

    def validate_network_list(self, net_list: NetworkConfigList) -> list[str]:
        """Check that every plugin exists and supports the version; return capabilities."""
        caps: dict[str, None] = {}
        errors = []
        for net in net_list.plugins:
            try:
                self._validate_plugin(net.network.type, net_list.cni_version)
            except CNIError as exc:
                errors.append(exc)
            caps.update((cap, None) for cap, on in net.network.capabilities.items() if on)
        if errors:
            raise CNIError("[" + " ".join(str(error) for error in errors) + "]")
        return list(caps)

    def validate_network(self, net: NetworkConfig) -> list[str]:
        """Check a single plugin; return its enabled capabilities."""
        caps = [cap for cap, on in net.network.capabilities.items() if on]
        self._validate_plugin(net.network.type, net.network.cni_version)
        return caps

    def get_version_info(self, plugin_type: str) -> list[str]:
        """Return the specification versions a plugin supports."""
        return self.executor.version_info(self.executor.find_in_path(plugin_type, self.path))

    def gc_network_list(self, net_list: NetworkConfigList, args: GCArgs) -> None:
        """Delete stale cached attachments, then send GC to plugins that support it."""
        try:
            cached = self.get_cached_attachments("")
        except OSError:
            return
        valid = {(a.container_id, a.if_name) for a in args.valid_attachments}
        errors: list[BaseException] = []
        for attachment in cached:
            if attachment.network != net_list.name:
                continue
            if (attachment.container_id, attachment.if_name) in valid:
                continue
            rt = RuntimeConf(
                container_id=attachment.container_id,
                netns=attachment.netns,
                if_name=attachment.if_name,
                args=list(attachment.cni_args),
                capability_args=dict(attachment.capability_args),
            )
            try:
                self.del_network_list(net_list, rt)
            except CNIError as exc:
                errors.append(
                    CNIError(f"failed to delete stale attachment {rt.container_id} {rt.if_name}: {exc}")
                )

        try:
            supports_gc = greater_than_or_equal_to(net_list.cni_version, "1.1.0")
        except CNIError:
            supports_gc = False
        if supports_gc:
            inject = {
                "name": net_list.name,
                "cniVersion": net_list.cni_version,
                "cni.dev/valid-attachments": [a.to_json() for a in args.valid_attachments],
            }
            for plugin in net_list.plugins:
                try:
                    conf = inject_conf(plugin, inject)
                except CNIError as exc:
                    errors.append(CNIError(
                        f"failed to generate configuration to GC plugin {plugin.network.type}: {exc}"
                    ))
                    continue
                try:
                    path = self.executor.find_in_path(conf.network.type, self.path)
                    self.executor.exec_plugin(path, conf.raw, self._args("GC", RuntimeConf()))
                except CNIError as exc:
                    errors.append(CNIError(f"failed to GC plugin {plugin.network.type}: {exc}"))

        combined = join_errors(*errors)
        if combined is not None:
            raise combined