import json
import os
import stat
import sys

import pytest

from cninet.api import (
    CNIConfig,
    PluginArgs,
    PluginExecutor,
    build_one_config,
    inject_runtime_config,
    plugin_description,
)
from cninet.cache import GCArgs, GCAttachment, RuntimeConf
from cninet.conf import NetConf, conf_from_bytes, conf_list_from_bytes
from cninet.errors import CheckNotSupportedError, CNIError

PLUGIN = """#!{python}
import json, os, sys
conf = json.loads(sys.stdin.read() or "{{}}")
cmd = os.environ["CNI_COMMAND"]
log = os.environ.get("NOOP_LOG")
if log:
    with open(log, "a") as fh:
        fh.write(json.dumps({{"command": cmd, "stdin": conf,
            "containerid": os.environ.get("CNI_CONTAINERID"),
            "ifname": os.environ.get("CNI_IFNAME"),
            "args": os.environ.get("CNI_ARGS")}}) + "\\n")
if cmd == "VERSION":
    print(json.dumps({{"cniVersion": "1.1.0", "supportedVersions":
        ["0.1.0", "0.2.0", "0.3.0", "0.3.1", "0.4.0", "1.0.0", "1.1.0"]}}))
    sys.exit(0)
if conf.get("fail"):
    print(json.dumps({{"code": 100, "msg": conf["fail"]}}))
    sys.exit(1)
if cmd == "ADD":
    out = conf.get("prevResult") or {{"cniVersion": conf.get("cniVersion"),
        "ips": [{{"address": "10.1.2.3/24"}}]}}
    print(json.dumps(out))
"""


@pytest.fixture
def bindir(tmp_path):
    d = tmp_path / "bin"
    d.mkdir()
    p = d / "noop"
    p.write_text(PLUGIN.format(python=sys.executable))
    p.chmod(p.stat().st_mode | stat.S_IEXEC)
    return str(d)


@pytest.fixture
def log(tmp_path, monkeypatch):
    path = tmp_path / "log"
    monkeypatch.setenv("NOOP_LOG", str(path))
    return path


def entries(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def cni(bindir, tmp_path):
    return CNIConfig([bindir], None, str(tmp_path / "cache"))


@pytest.fixture
def rt():
    return RuntimeConf(
        container_id="some-container-id",
        netns="/some/netns/path",
        if_name="some-eth0",
        args=[("FOO", "BAR")],
        capability_args={"portMappings": [{"hostPort": 8080}], "other": 33},
    )


NET = b'{"type":"noop","name":"apitest","cniVersion":"1.0.0","capabilities":{"portMappings":true,"x":false}}'
LIST = (
    b'{"name":"some-list","cniVersion":"1.1.0","plugins":['
    b'{"type":"noop","capabilities":{"portMappings":true,"other":true}},'
    b'{"type":"noop","capabilities":{"other":true}},{"type":"noop"}]}'
)


def test_plugin_description():
    assert plugin_description(None) == "<missing>"
    assert plugin_description(NetConf(type="noop")) == 'type="noop"'
    assert plugin_description(NetConf(type="a", name="n")) == 'type="a" name="n"'


def test_plugin_args_env():
    env = PluginArgs("ADD", "c", "/ns", [("A", "1"), ("B", "2")], "eth0", "/p").to_env()
    assert env["CNI_ARGS"] == "A=1;B=2"
    assert env["CNI_COMMAND"] == "ADD"


def test_inject_runtime_config_filters_capabilities(rt):
    conf = inject_runtime_config(conf_from_bytes(NET), rt)
    assert json.loads(conf.raw)["runtimeConfig"] == {"portMappings": [{"hostPort": 8080}]}
    rt.capability_args = {"unknown": 1}
    assert "runtimeConfig" not in json.loads(inject_runtime_config(conf_from_bytes(NET), rt).raw)


def test_build_one_config_injects_name_and_prev(rt):
    conf = build_one_config("lst", "0.4.0", conf_from_bytes(NET), {"a": 1}, None)
    data = json.loads(conf.raw)
    assert data["name"] == "lst" and data["cniVersion"] == "0.4.0"
    assert data["prevResult"] == {"a": 1}


def test_add_network_and_cache(cni, rt, log):
    net = conf_from_bytes(NET)
    result = cni.add_network(net, rt)
    assert result["ips"] == [{"address": "10.1.2.3/24"}]
    entry = entries(log)[0]
    assert entry["command"] == "ADD"
    assert entry["args"] == "FOO=BAR"
    assert entry["stdin"]["runtimeConfig"] == {"portMappings": [{"hostPort": 8080}]}
    config, new_rt = cni.get_network_cached_config(net, rt)
    assert config == NET
    assert new_rt.args == rt.args
    assert cni.get_network_cached_result(net, rt) == result
    for cid in ("", rt.container_id):
        atts = cni.get_cached_attachments(cid)
        assert [(a.network, a.if_name) for a in atts] == [("apitest", "some-eth0")]


def test_missing_plugin(cni, rt, bindir):
    net = conf_from_bytes(b'{"type":"nope","name":"apitest","cniVersion":"1.0.0"}')
    with pytest.raises(CNIError, match='failed to find plugin "nope"'):
        cni.add_network(net, rt)
    with pytest.raises(CNIError) as info:
        cni.validate_network(net)
    assert str(info.value) == f'failed to find plugin "nope" in path [{bindir}]'


def test_plugin_error(cni, rt):
    net = conf_from_bytes(b'{"type":"noop","name":"apitest","cniVersion":"1.0.0","fail":"plugin error: banana"}')
    with pytest.raises(CNIError) as info:
        cni.add_network(net, rt)
    assert str(info.value) == "plugin error: banana"


def test_cache_dir_not_writable(cni, rt, tmp_path):
    (tmp_path / "cache").mkdir()
    (tmp_path / "cache" / "results").write_text("x")
    with pytest.raises(CNIError, match="failed to set network"):
        cni.add_network(conf_from_bytes(NET), rt)


def test_check_network_old_version(cni, rt):
    net = conf_from_bytes(b'{"type":"noop","name":"apitest","cniVersion":"0.3.1"}')
    with pytest.raises(CheckNotSupportedError) as info:
        cni.check_network(net, rt)
    assert str(info.value) == 'configuration version "0.3.1" does not support the CHECK command'


def write_cache(cni, name, rt, text):
    path = cni.cache.file_path(name, rt)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as fh:
        fh.write(text)
    return path


def test_check_network_passes_prev_result(cni, rt, log):
    cached = {"cniVersion": "1.0.0", "ips": [{"address": "10.1.2.3/24"}], "dns": {}}
    write_cache(cni, "apitest", rt, json.dumps(cached))
    cni.check_network(conf_from_bytes(NET), rt)
    entry = entries(log)[0]
    assert entry["command"] == "CHECK"
    assert entry["stdin"]["prevResult"] == cached


def test_invalid_cached_result(cni, rt):
    write_cache(cni, "apitest", rt, "adfadsfasdfasfdsafaf")
    with pytest.raises(CNIError, match='^failed to get network "apitest" cached result: decoding version'):
        cni.del_network(conf_from_bytes(NET), rt)


def test_unconvertible_cached_result(cni, rt):
    write_cache(cni, "apitest", rt, '{"cniVersion":"0.4567.0"}')
    with pytest.raises(CNIError) as info:
        cni.check_network(conf_from_bytes(NET), rt)
    assert str(info.value) == 'failed to get network "apitest" cached result: unsupported CNI result version "0.4567.0"'


def test_del_network_removes_cache(cni, rt, log):
    net = conf_from_bytes(NET)
    path = write_cache(cni, "apitest", rt, '{"cniVersion":"0.4.0","ips":[]}')
    cni.del_network(net, rt)
    assert not os.path.exists(path)
    assert cni.get_network_cached_result(net, rt) is None
    assert cni.get_network_cached_config(net, rt) is None
    cni.del_network(net, rt)
    assert [e["command"] for e in entries(log)] == ["DEL", "DEL"]


def test_del_old_version_no_prev_result(cni, rt, log):
    net = conf_from_bytes(b'{"type":"noop","name":"apitest","cniVersion":"0.3.1"}')
    path = write_cache(cni, "apitest", rt, '{"cniVersion":"0.3.1"}')
    cni.del_network(net, rt)
    logged = entries(log)
    assert [e["command"] for e in logged] == ["DEL"]
    assert "prevResult" not in logged[0]["stdin"]
    assert not os.path.exists(path)
    assert cni.get_network_cached_config(net, rt) is None


def test_del_list_reverse_order(cni, rt, log):
    lst = conf_list_from_bytes(
        b'{"name":"l","cniVersion":"1.0.0","plugins":[{"type":"noop","n":1},{"type":"noop","n":2}]}'
    )
    result = cni.add_network_list(lst, rt)
    assert cni.get_network_list_cached_result(lst, rt) == result
    cni.del_network_list(lst, rt)
    deletes = [e["stdin"]["n"] for e in entries(log) if e["command"] == "DEL"]
    assert deletes == [2, 1]
    assert cni.get_network_list_cached_result(lst, rt) is None
    assert cni.get_cached_attachments("") == []


def test_validate_list_errors(cni, bindir):
    lst = conf_list_from_bytes(LIST)
    assert sorted(cni.validate_network_list(lst)) == ["other", "portMappings"]
    lst.cni_version = "broken"
    with pytest.raises(CNIError) as info:
        cni.validate_network_list(lst)
    msg = 'plugin noop does not support config version "broken"'
    assert str(info.value) == f"[{msg} {msg} {msg}]"


def test_add_network_list_chains(cni, rt, log):
    lst = conf_list_from_bytes(LIST)
    result = cni.add_network_list(lst, rt)
    assert result["ips"] == [{"address": "10.1.2.3/24"}]
    logged = entries(log)
    assert [e["command"] for e in logged] == ["ADD"] * 3
    assert logged[1]["stdin"]["prevResult"] == result
    assert logged[1]["stdin"]["runtimeConfig"] == {"other": 33}
    assert "runtimeConfig" not in logged[2]["stdin"]
    config, _ = cni.get_network_list_cached_config(lst, rt)
    assert config == LIST
    assert cni.get_network_list_cached_result(lst, rt) == result


@pytest.mark.parametrize(
    "field,value,message",
    [
        ("container_id", "some-%%container-id", "invalid characters in containerID; some-%%container-id"),
        ("if_name", "", "interface name is empty"),
        ("if_name", "1234567890123456", "interface name is too long; interface name should be less than 16 characters"),
        ("if_name", "..", "interface name is . or .."),
        ("if_name", "test:test", "interface name contains / or : or whitespace characters"),
    ],
)
def test_add_network_list_validation(cni, rt, field, value, message):
    setattr(rt, field, value)
    with pytest.raises(CNIError) as info:
        cni.add_network_list(conf_list_from_bytes(LIST), rt)
    assert str(info.value) == 'plugin type="noop" failed (add): ' + message
    assert info.value.__cause__.msg == message.split("; ")[0]


def test_invalid_network_name(cni, rt):
    lst = conf_list_from_bytes(LIST)
    lst.name = "invalid-%%-name"
    with pytest.raises(CNIError, match="invalid characters found in network name"):
        cni.add_network_list(lst, rt)


def test_check_list_disabled_and_old(cni, rt, log):
    lst = conf_list_from_bytes(LIST)
    lst.disable_check = True
    cni.check_network_list(lst, rt)
    assert not log.exists()
    lst.cni_version = "0.3.1"
    with pytest.raises(CheckNotSupportedError):
        cni.check_network_list(lst, rt)


def test_gc_network_list(cni, rt, log):
    lst = conf_list_from_bytes(LIST)
    cni.add_network_list(lst, rt)
    gc = GCArgs([GCAttachment(rt.container_id, rt.if_name)])
    cni.gc_network_list(lst, gc)
    cni.gc_network_list(lst, GCArgs())
    first = [e for e in entries(log)][::1]
    commands = [e["command"] for e in first]
    assert commands == ["ADD"] * 3 + ["GC"] * 3 + ["DEL"] * 3 + ["GC"] * 3
    assert first[3]["stdin"]["cni.dev/valid-attachments"] == [
        {"containerID": rt.container_id, "ifname": rt.if_name}
    ]
    assert first[-1]["stdin"]["cni.dev/valid-attachments"] == []
    assert cni.get_cached_attachments("") == []


def test_executor_timeout(tmp_path):
    p = tmp_path / "sleep"
    p.write_text(f"#!{sys.executable}\nimport time\ntime.sleep(5)\n")
    p.chmod(0o755)
    with pytest.raises(CNIError, match="netplugin failed with no error message"):
        PluginExecutor(timeout=0.5).exec_plugin(str(p), b"{}", PluginArgs("ADD"))