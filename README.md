# podcluster

A small cluster manager made of two commands:

- `podcluster-master` announces itself on the local network, registers worker
  nodes, tracks their heartbeats, boots new virtual machine nodes on request
  and accepts pod uploads.
- `podcluster-agent` runs on each worker node. It finds the master, registers
  itself, sends heartbeats and starts a web shell.

It is meant for Linux: it uses Unix sockets, `/proc/meminfo`, and the
`qemu-img`, `virt-install` and `ttyd` programs.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## The master

```
podcluster-master [--pod FILE] [--zip FILE]
```

Each service runs on its own thread until Ctrl-C:

| Service | Where | What it does |
|---|---|---|
| Broadcast | UDP port 5000 | Sends `{"type":"master", "ip":"<ip>"}` to the broadcast address of every non-loopback IPv4 interface (at most 10) every 5 s |
| Registration | ZeroMQ REP, `tcp://*:5555` | Assigns node ids in registration order (at most 100 nodes) |
| Heartbeats | ZeroMQ SUB, `tcp://*:5557` | Records `"<id> <timestamp> ..."` heartbeats |
| Monitor | – | Every 5 s marks a node inactive if its last heartbeat is more than 8 s old, active otherwise |
| Node listing | Unix socket `/tmp/node_registry.sock` | Answers the request `GET_NODES` with a JSON array of nodes |
| Node creation | Unix socket `/tmp/node_creation.sock` | Creates a qcow2 overlay disk and boots a VM with `virt-install` |
| Pod uploads | ZeroMQ REP, `ipc:///tmp/pod_dispatcher.sock` | Stores and checks `.pod` + `.zip` uploads under `pods/pod_<n>/` |

At start-up the master also reads the pod file given by `--pod` (default
`testing.pod`), prints its summary and checks it against the archive given by
`--zip` (default `testing.zip`). If the files are missing an error is logged
and the services keep running.

### Messages

Registration request and reply:

```
{"node_ip":"10.0.0.5","cpus":4,"memory":2048,"message_type":"registration"}
{"node_ip":"10.0.0.5","node_id":0}
```

A malformed request is answered with `{"error": "malformed registration"}`,
and one that arrives when the table is full with `{"error": "node table full"}`.

Node listing reply, one object per node:

```
[{"node_id": 0, "node_ip": "10.0.0.5", "cpus": 4, "memory": 2048, "pod_count": 0, "active": true}]
```

Node creation request, sent on the Unix socket:

```
{"cpus": "2", "memory": "1024"}
```

The master runs `sudo qemu-img create` for
`/var/lib/libvirt/images/overlay_<n>.qcow2` backed by
`/var/lib/libvirt/images/linux2022.qcow2`, then starts
`sudo virt-install --name my-vm<n> ...` in the background, where `<n>` is the
number of registered nodes, and replies
`Node creation request received. Booting soon...`.

Pod upload: a three-frame message of metadata, pod file bytes and zip bytes.
The metadata is

```
{"pod_filename":"app.pod","zip_filename":"app.zip"}
```

and names default to `uploaded.pod` and `uploaded.zip` when absent. The reply
is `Upload & parsing successful` or `Upload failed: empty file(s)`.

## The agent

```
podcluster-agent [--setup-script PATH] [--broadcast-port PORT]
```

The agent:

1. runs the setup script (default `/root/testing/new_ip.sh`) if it exists;
2. waits for a master announcement on the broadcast port (default 5000);
3. registers on TCP port 5555 with its first non-loopback IPv4 address, CPU
   count and total memory in MB (node id `-1` if registration fails);
4. publishes `"<id> <unix time> <cpus> <memory>"` to TCP port 5557 every 3 s;
5. starts `ttyd -p 7681 --writable /bin/sh`.

Ctrl-C stops the heartbeats and terminates the shell.

## Pod files

```
# comment
name: my-pod
cpu: 2
memory: 512MB
main: main.py
sidecars:
  - logging: logger.py
```

Memory is given in `MB` or `GB` (GB is multiplied by 1024); other units are
ignored. The logging line is read only after `sidecars:`. An archive is valid
when both scripts exist inside its `testing/` directory; it is unpacked into a
temporary directory (default `./tmp_extract`) that is removed afterwards.
Entries with absolute paths or `..` are skipped.

## Using it as a library

```python
from podcluster.pod_parser import PodError, parse_pod_file, validate_zip_contents
from podcluster.node_registry import NodeRegistry

spec = parse_pod_file("testing.pod")          # raises OSError if unreadable
try:
    ok = validate_zip_contents("testing.zip", spec, "./tmp_extract")
except PodError as exc:                        # archive cannot be opened
    print(exc)

registry = NodeRegistry(100)
node = registry.register("10.0.0.5", 4, 2048, 0)
registry.record_heartbeat(node.node_id, 5)
registry.check_liveness(now=20)                # {0: False}
print(registry.to_json())
```

Other useful pieces: `podcluster.broadcast.broadcast_address`,
`podcluster.node_registry.parse_registration` / `parse_heartbeat`,
`podcluster.node_creation.parse_node_request` / `vm_install_command`,
`podcluster.pod_parser.PodDispatcher.store_upload` and
`podcluster.agent.parse_master_announcement`.

## What it does not do

- Uploaded pods are stored and checked only; nothing schedules them onto
  nodes or runs them, and a node's `pod_count` stays 0.
- There is no command for uploading pods, requesting new nodes or listing
  nodes; clients speak to the sockets above directly.
- The node table lives in memory and is lost when the master stops.
- Nothing is authenticated or encrypted.