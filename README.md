# cninet

`cninet` is a library for container network configurations and the plugins
that act on them. It can:

- read network configuration files and lists from a directory;
- run the configured plugin executables for ADD, CHECK, DEL and GC;
- cache the result of each attachment on disk;
- check that plugins support the configured spec version.

## Installing

```
pip install cninet
```

To run the tests:

```
pip install "cninet[test]"
pytest
```

## Modules

- `cninet.conf`: parses, loads and rewrites configurations. It provides
  `NetConf`, `NetworkConfig` and `NetworkConfigList`.
- `cninet.cache`: holds the on-disk result cache (`ResultCache`) and the
  `RuntimeConf`, `NetworkAttachment`, `GCAttachment` and `GCArgs` records.
- `cninet.api`: holds `CNIConfig`, which runs plugin chains, and
  `PluginExecutor`, which finds and runs plugin executables.
- `cninet.versions`: provides `parse_version` and `greater_than_or_equal_to`
  for spec version strings.
- `cninet.errors`: provides `CNIError` and its subclasses, plus `join_errors`.

## Loading configuration

A single network configuration lives in a file ending in `.conf` or `.json`.
A list of plugins lives in a file ending in `.conflist`. Files are read in
sorted name order. Subdirectories are not searched.

```python
from cninet.conf import load_conf_list, conf_list_from_bytes, inject_conf

net_list = load_conf_list("/etc/cni/net.d", "mynet")
print(net_list.name, net_list.cni_version, [p.network.type for p in net_list.plugins])
```

If no list has the requested name, `load_conf_list` looks for a single
`.conf` or `.json` configuration with that name. If it finds one, it wraps it
in a list with that one plugin (the same as `conf_list_from_conf`).

Lookup errors:

- `NotFoundError`: no configuration has that name.
- `NoConfigsFoundError`: the directory holds no configurations at all.
- `CNIError`: a file cannot be read or parsed. A plugin configuration must
  name a `type`.

`conf_from_bytes` and `conf_list_from_bytes` parse configurations held in
memory. `conf_files(directory, extensions)` lists the matching files in a
directory.

`inject_conf(config, {"key": value})` returns a new `NetworkConfig` with those
top-level keys set in its JSON. Empty keys and `None` values are rejected.

## Running plugins

```python
from cninet.api import CNIConfig, PluginExecutor
from cninet.cache import RuntimeConf

cni = CNIConfig(["/opt/cni/bin"], PluginExecutor(timeout=30), cache_dir="/var/lib/cni")
rt = RuntimeConf(container_id="abc123", netns="/var/run/netns/test", if_name="eth0")

result = cni.add_network_list(net_list, rt)
cni.check_network_list(net_list, rt)
cni.del_network_list(net_list, rt)
```

### How plugins are run

Each plugin runs as a subprocess:

- its configuration goes to its standard input;
- `CNI_COMMAND`, `CNI_CONTAINERID`, `CNI_NETNS`, `CNI_ARGS`, `CNI_IFNAME` and
  `CNI_PATH` are set in its environment.

Order and inputs:

- Plugins run in list order for ADD and CHECK, and in reverse order for DEL.
- During ADD, each plugin receives the previous plugin's result as
  `prevResult`.
- For CHECK, and for DEL with spec version 0.4.0 or later, every plugin
  receives the cached result instead.
- A plugin's `capabilities` decide which entries of the runtime's
  `capability_args` it receives under `runtimeConfig`.

Results are plain JSON objects (`dict`). A plugin that exits with an error
and prints a JSON error object raises `CNIError` carrying that object's
message.

ADD checks its inputs and raises an error for:

- an invalid container ID;
- an invalid network name;
- an interface name that is empty, longer than 15 characters, `.` or `..`,
  or contains `/`, `:` or whitespace.

`add_network`, `check_network` and `del_network` do the same for a single
configuration.

### Validation and version queries

- `validate_network` and `validate_network_list` check that each plugin exists
  and supports the configuration's version. They return the enabled
  capabilities.
- `get_version_info` returns the versions a plugin reports.

## The result cache

Results are cached under `<cache_dir>/results/`, one file per network,
container and interface. Without a cache directory, the cache uses
`RuntimeConf.cache_dir`, and then `/var/lib/cni`.

To read the cache back:

- `get_network_list_cached_result` and `get_network_cached_result`
- `get_network_list_cached_config` and `get_network_cached_config`
- `get_cached_attachments`

The config readers return the cached configuration bytes and an updated
`RuntimeConf`, or `None`. Files in the older layout, which hold only the bare
result, are still read.

## Garbage collection

`gc_network_list(net_list, GCArgs(valid_attachments=[...]))` issues DEL for
every cached attachment of the list's network that is not listed as valid.
For spec version 1.1.0 and later it also sends GC to each plugin, with the
valid attachments under `cni.dev/valid-attachments`. Failures are gathered
into one `MultiError`.

## Errors

- CHECK on a configuration older than spec version 0.4.0 raises
  `CheckNotSupportedError`.
- All errors raised by the package derive from `CNIError`.

## What it does not do

- There is no command-line tool. The package is used as a library only.
- Cached results are not converted between spec versions. When a cached
  result is read back, its `cniVersion` is relabelled to the configuration's
  version, and the rest of the result is returned unchanged.
- Plugin runs can be bounded by `PluginExecutor(timeout=...)`. There is no
  other way to cancel them.