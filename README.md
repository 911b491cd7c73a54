# multivpc

`multivpc` links isolated VPCs through their NAT gateways. It builds the
shell commands for GRE and VXLAN tunnels and runs them inside the gateway
pod. When a gateway goes down or comes back, it moves VPC routes, published
gateway addresses and tunnels to a healthy gateway. It also programs ECMP
static routes on OVN logical routers, and lets a custom VPC's DNS resolve
`clusterset.local` names through the cluster DNS service.

The package has no runtime dependencies. The controllers read and write
cluster state through a client object. `multivpc.kube.InMemoryClient` is a
complete in-process store that they work against.

## Modules

| Module | Contents |
| --- | --- |
| `multivpc.kube` | `InMemoryClient` (`get`, `list`, `create`, `update`, `update_status`, `delete`, `subscribe`), `labels_match`, `GatewayLister` (`fetch`, `retrieve_all`), `Operation`, and the `NotFoundError` and `AlreadyExistsError` exceptions. |
| `multivpc.tunnel` | `TunnelOperationFactory`, `GreOperation`, `VxlanOperation` (each with `create_cmd` and `delete_cmd`), and `get_vid_and_port`. |
| `multivpc.ecmp` | `CommandRouteControl` (runs `ovn-nbctl`), `ApiRouteControl` (calls a northbound client), `handle_gw_route`, `validate_parameters`, `RouteEvent` and `RouteError`. |
| `multivpc.vpcnattunnel` | `VpcNatTunnelReconciler`, plus helpers to find a gateway pod (`get_nat_gw_pod`), read its addresses (`get_gw_extern_ip`, `get_ovn_gw_ip`) and build tunnel and globalnet route commands. |
| `multivpc.vpcdnsforward` | `VpcDnsForwardReconciler` and `add_clusterset_forward`. |
| `multivpc.gateway_informer` | `GatewayInformer` with `on_add`, `on_update`, `on_delete` and `start`. |
| `multivpc.version` | `print_version`, which writes `<component> version: <version>` to standard error. |

## The object store

Objects are plain dicts with `metadata`, `spec` and `status` keys.

* `update` keeps the stored `status`, and `update_status` changes only the `status`.
* `list` filters by namespace and by an equality label selector.
* Deleting an object that has finalizers sets `metadata.deletionTimestamp`
  instead of removing it. The object goes away when an `update` clears its
  finalizers.
* `subscribe(kind, callback)` calls `callback(operation, obj, old_obj)` on
  every change of that kind and returns a function that cancels the
  subscription.

```python
from multivpc.kube import InMemoryClient, labels_match

client = InMemoryClient()
client.create("Vpc", {"metadata": {"name": "vpc1", "labels": {"team": "a"}}})
client.list("Vpc", labels={"team": "a"})          # [the vpc1 object]

labels_match({"localVpc": "vpc1", "localCluster": "east"}, {"localVpc": "vpc1"})   # True
labels_match({"localVpc": "vpc1"}, {"localVpc": "vpc2"})                            # False
```

## Tunnel commands

```python
from multivpc.tunnel import TunnelOperationFactory

tunnel = {
    "metadata": {"name": "t1"},
    "spec": {"type": "gre"},
    "status": {"remoteIP": "10.0.0.2", "internalIP": "10.0.0.1",
               "interfaceAddr": "192.168.100.1/24"},
}
op = TunnelOperationFactory().create_tunnel_operation(tunnel)
op.create_cmd()
# 'ip tunnel add t1 mode gre remote 10.0.0.2 local 10.0.0.1 ttl 255;ip link set t1 up;ip addr add 192.168.100.1/24 dev t1'
op.delete_cmd()   # 'ip tunnel del t1'
```

VXLAN tunnels read the id and port from the `vid` and `vx-port` labels. The
defaults are `100` and `4789`. A type other than `vxlan` gives GRE.

## Reconciling tunnels

`VpcNatTunnelReconciler(client, cluster_id, executor)` takes an executor. The
executor is a callable `(pod_name, namespace, container, command)` that
returns `(stdout, stderr)`. Any output on stderr raises `CommandFailedError`.

On first reconcile the reconciler does the following:

* adds its finalizer;
* fills the tunnel status from the local and remote GatewayExIps, the
  submariner Cluster and the ClusterGlobalEgressIP;
* creates the tunnel and the globalnet routes and SNAT rule in the gateway pod;
* labels the tunnel with `localVpc`, `remoteCluster` and `remoteVpc`.

Later changes to the remote IP, internal IP, interface address or local
gateway rebuild the tunnel. A change of tunnel type is reverted. Deleting the
object removes the routes and the tunnel, then releases the finalizer.

The gateway pod must be the only pod of its gateway and must be `Running`.
Otherwise `get_nat_gw_pod` waits five seconds and raises `PodStateError`.

## Other behaviour

* `VpcDnsForwardReconciler` changes the `vpc-dns-corefile` ConfigMap only
  when it does not yet mention `clusterset.local`. It then appends a route to
  the cluster DNS, via the `ovn-default` subnet gateway, to the route commands
  of the active VpcDns deployment's first init container. Deletion removes
  that route again.
* `GatewayInformer.start()` handles every existing NAT gateway StatefulSet in
  `kube-system` and subscribes to later changes. It returns a function that
  stops the subscription.
* The ECMP controls raise `ValueError` before changing anything when the
  router name or prefix is empty. `CommandRouteControl` also raises it for a
  blank next hop. A failing `ovn-nbctl` raises `RouteError`.

## What this package does not do

* It does not connect to a real cluster API server. No client for one is
  included; the controllers only work with `InMemoryClient` or an object with
  the same methods.
* It does not run commands in pods itself. The caller supplies the executor.
* It does not copy GatewayExIp objects between clusters through a broker.
* It does not turn exported services into service imports.
* It has no work queue, retry loop or command-line entry point. Callers call
  `reconcile` and the event handlers themselves.