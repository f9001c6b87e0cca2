# netavark

A network setup library for Linux containers. It reads a container's
network description, creates the interfaces inside the container's network
namespace and reports back what it configured.

It provides:

- **Bridge networks** (`netavark.bridge.Bridge`): a host bridge (created on
  demand, optionally enslaved to a VRF) and a veth pair into the container,
  with addresses, default routes, static routes and forwarding sysctls.
- **macvlan and ipvlan networks** (`netavark.vlan.Vlan`): a sub-interface
  of a host interface created inside the container namespace, with
  addresses, default routes and static routes.
- **External plugins** (`netavark.netplugin.PluginDriver`): any executable
  in a plugin directory can act as a network driver, speaking JSON on stdin
  and stdout.
- **A plugin framework** (`netavark.plugin`) for writing such executables.
- **A small netlink client** (`netavark.netlink.Socket`) for links,
  addresses and routes.

Only the standard library is needed. Setting up networks needs Linux and
the privileges to change network namespaces, links and sysctls.

## Network descriptions

Configuration arrives as JSON with the same field names the types in
`netavark.types` use. Every type converts to and from plain dictionaries
with `from_dict` and `to_dict`:

```python
from netavark.types import Network, load_network_options

options = load_network_options("/run/containers/net-options.json")
for name, network in options.network_info.items():
    per_network = options.networks[name]
    print(name, network.driver, per_network.interface_name)

network = Network.from_dict(
    {
        "name": "podman1",
        "id": "0123456789abcdef",
        "driver": "bridge",
        "network_interface": "podman1",
        "subnets": [{"subnet": "10.88.0.0/16", "gateway": "10.88.0.1"}],
        "ipv6_enabled": False,
        "internal": False,
        "dns_enabled": True,
    }
)
assert Network.from_dict(network.to_dict()) == network
```

`load_network_options(None)` reads the JSON from standard input instead of
a file. Malformed input raises `netavark.internal_types.NetavarkError`.

## Network options

Options set in a network's `options` map:

| option             | drivers               | meaning                                          |
|--------------------|-----------------------|--------------------------------------------------|
| `mtu`              | all built-in          | MTU for the created interfaces (default: kernel) |
| `metric`           | all built-in          | metric of the default routes (default 100)       |
| `no_default_route` | all built-in          | `true` to skip adding default routes             |
| `isolate`          | bridge                | `true`, `strict` or `false` (default `false`)    |
| `vrf`              | bridge                | VRF device a newly created bridge is attached to |
| `mode`             | macvlan, ipvlan       | `bridge`, `private`, `vepa`, `passthru`, `source` / `l2`, `l3`, `l3s` |
| `bclim`            | macvlan               | broadcast queue cutoff                           |

The IPAM driver is chosen with `ipam_options["driver"]`: `host-local`
(the default, addresses come from the per-network `static_ips`), `dhcp` or
`none`.

When the network is internal, the bridge driver turns off forwarding on
the bridge and skips firewall rules; the vlan driver adds no gateways.

## Choosing a driver

```python
from netavark.core_utils import open_netlink_sockets
from netavark.driver import get_network_driver

host, container = open_netlink_sockets("/run/netns/mycontainer")
driver = get_network_driver(info, ["/usr/libexec/netavark"])
driver.validate()
status, dns_entry = driver.setup((host.netlink, container.netlink))
```

`info` is a `netavark.internal_types.DriverInfo` describing the container,
the network, the namespace file descriptors and the firewall to use.
Drivers named `bridge`, `macvlan` and `ipvlan` are built in; any other name
is looked up as an executable file in the plugin directories, and an
unknown name raises `NetavarkError`.

`open_netlink_sockets(netns_path)` returns two
`netavark.core_utils.NamespaceOptions`, for the host and the container
namespace, each holding the open namespace file and a netlink socket
inside that namespace.

For bridge networks with `dns_enabled`, `setup` returns a
`netavark.bridge.DnsEntry` with the container's names, addresses and the
network gateways; other drivers return `None` in its place.

## The firewall object

The bridge driver does not write firewall rules itself. `DriverInfo.firewall`
must be an object with these methods, which the driver calls with the types
from `netavark.internal_types`:

- `setup_network(setup: SetupNetwork, dns_port: int)`
- `setup_port_forward(config: PortForwardConfig)`
- `teardown_network(teardown: TearDownNetwork)`
- `teardown_port_forward(teardown: TeardownPortForward)`

## Writing a plugin

A plugin is an executable that answers the `create`, `setup`, `teardown`
and `info` subcommands. Implement `netavark.plugin.Plugin` and hand it to
`PluginExec`:

```python
from netavark.plugin import Info, Plugin, PluginExec
from netavark.types import StatusBlock


class DummyPlugin(Plugin):
    def create(self, network):
        return network

    def setup(self, netns, opts):
        return StatusBlock(dns_search_domains=[], dns_server_ips=[], interfaces={})

    def teardown(self, netns, opts):
        pass


if __name__ == "__main__":
    PluginExec(DummyPlugin(), Info("0.1.0", "1.0.0", None)).exec()
```

With no subcommand, or with `info`, the plugin prints its `Info` as JSON.
`PluginExec.run` raises on failure; `PluginExec.exec` instead writes
`{"error": "..."}` to standard output and exits with status 1, which is how
`PluginDriver` reports the error on the calling side.

## What it does not do

- **No DHCP client.** A macvlan network with the `dhcp` IPAM driver is
  accepted by `validate`, but `setup` and `teardown` raise `NetavarkError`
  because no DHCP proxy is available to obtain or release the lease.
- **No firewall backend.** Rules are delegated to the object passed as
  `DriverInfo.firewall`; none is included.
- **No DNS server.** The bridge driver returns a `DnsEntry`, but nothing
  in the package serves or stores it.
- **No command-line program.** The package is a library; running a network
  setup is up to the caller.