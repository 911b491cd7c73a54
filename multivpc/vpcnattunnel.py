"""Reconciles VpcNatTunnel objects into tunnels and routes inside NAT gateway pods."""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Mapping, Optional, Protocol, Sequence

from .kube import InMemoryClient, NotFoundError
from .tunnel import TunnelOperationFactory

logger = logging.getLogger(__name__)

Object = dict[str, Any]

VPC_NAT_TUNNEL = "VpcNatTunnel"
GATEWAY_EXIP = "GatewayExIp"
POD = "Pod"
SUBMARINER_CLUSTER = "Cluster"
CLUSTER_GLOBAL_EGRESS_IP = "ClusterGlobalEgressIP"

NAT_GW_NAMESPACE = "kube-system"
NAT_GW_CONTAINER = "vpc-nat-gw"
NAT_GW_LABEL = "ovn.kubernetes.io/vpc-nat-gw"
EXTERNAL_IP_ANNOTATION = "ovn-vpc-external-network.kube-system.kubernetes.io/ip_address"
GATEWAY_ANNOTATION = "ovn.kubernetes.io/gateway"
SUBMARINER_NAMESPACE = "submariner-operator"
GLOBAL_EGRESS_IP_NAME = "cluster-egress.submariner.io"
TUNNEL_FINALIZER = "tunnel.finalizer.example.io"
POD_RETRY_DELAY = 5.0


class PodStateError(RuntimeError):
    """Raised when a NAT gateway pod is not in a usable state."""


class CommandFailedError(RuntimeError):
    """Raised when a command run in a pod writes to standard error."""


class PodExecutor(Protocol):
    def __call__(
        self, pod_name: str, namespace: str, container: str, command: Sequence[str]
    ) -> tuple[str, str]:
        """Run ``command`` in the container and return (stdout, stderr)."""


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def gen_nat_gw_sts_name(name: str) -> str:
    """Name of the StatefulSet that runs the NAT gateway ``name``."""
    return f"vpc-nat-gw-{name}"


def get_nat_gw_pod(name: str, client: InMemoryClient) -> Object:
    """Return the single running pod of NAT gateway ``name``."""
    pods = client.list(
        POD,
        namespace=NAT_GW_NAMESPACE,
        labels={"app": gen_nat_gw_sts_name(name), NAT_GW_LABEL: "true"},
    )
    if not pods:
        raise NotFoundError("pod", name)
    if len(pods) != 1:
        time.sleep(POD_RETRY_DELAY)
        raise PodStateError("too many pod")
    if (pods[0].get("status") or {}).get("phase") != "Running":
        time.sleep(POD_RETRY_DELAY)
        raise PodStateError("pod is not active now")
    return pods[0]


def get_gw_extern_ip(pod: Mapping[str, Any]) -> str:
    """The gateway pod's address on the external network."""
    annotations = _meta(pod).get("annotations") or {}
    try:
        return annotations[EXTERNAL_IP_ANNOTATION]
    except KeyError:
        raise PodStateError("no ovn-vpc-external-network ip") from None


def get_ovn_gw_ip(pod: Mapping[str, Any]) -> str:
    """The OVN gateway address of the pod's subnet."""
    annotations = _meta(pod).get("annotations") or {}
    try:
        return annotations[GATEWAY_ANNOTATION]
    except KeyError:
        raise PodStateError("no ovn gateway") from None


def gen_create_tunnel_cmd(factory: TunnelOperationFactory, tunnel: Mapping[str, Any]) -> str:
    return factory.create_tunnel_operation(tunnel).create_cmd()


def gen_delete_tunnel_cmd(factory: TunnelOperationFactory, tunnel: Mapping[str, Any]) -> str:
    return factory.create_tunnel_operation(tunnel).delete_cmd()


def _globalnet_route(tunnel: Mapping[str, Any], route_verb: str, iptables_flag: str) -> str:
    status = tunnel.get("status") or {}
    egress = status.get("globalEgressIP") or []
    if not egress:
        raise ValueError("tunnel status has no global egress IPs")
    name = _meta(tunnel).get("name", "")
    remote_cidr = status.get("remoteGlobalnetCIDR", "")
    in_flow = f"ip route {route_verb} {status.get('globalnetCIDR', '')} via {status.get('ovnGwIP', '')} dev eth0"
    out_flow = f"ip route {route_verb} {remote_cidr} dev {name}"
    snat = (
        f"iptables -t nat {iptables_flag} POSTROUTING -d {remote_cidr} "
        f"-j SNAT --to-source {egress[0]}-{egress[-1]}"
    )
    return ";".join((in_flow, out_flow, snat))


def gen_globalnet_route(tunnel: Mapping[str, Any]) -> str:
    """Commands that route globalnet traffic through the tunnel and SNAT it."""
    return _globalnet_route(tunnel, "add", "-A")


def gen_del_globalnet_route(tunnel: Mapping[str, Any]) -> str:
    """Commands that undo ``gen_globalnet_route``."""
    return _globalnet_route(tunnel, "del", "-D")


class VpcNatTunnelReconciler:
    """Brings the tunnel in a NAT gateway pod in line with a VpcNatTunnel object."""

    def __init__(
        self,
        client: InMemoryClient,
        cluster_id: str,
        executor: PodExecutor,
        factory: Optional[TunnelOperationFactory] = None,
    ) -> None:
        self.client = client
        self.cluster_id = cluster_id
        self.executor = executor
        self.factory = factory or TunnelOperationFactory()

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            tunnel = self.client.get(VPC_NAT_TUNNEL, name, namespace)
        except NotFoundError:
            return
        if _meta(tunnel).get("deletionTimestamp"):
            self.handle_delete(tunnel)
        else:
            self.handle_create_or_update(tunnel)

    def _exec(self, pod: Mapping[str, Any], command: str) -> None:
        meta = _meta(pod)
        _, stderr = self.executor(
            meta.get("name", ""), meta.get("namespace", ""), NAT_GW_CONTAINER, ["sh", "-c", command]
        )
        message = (stderr or "").strip()
        if message:
            raise CommandFailedError(message)

    def _get_globalnet_cidr(self) -> str:
        cluster = self.client.get(SUBMARINER_CLUSTER, self.cluster_id, SUBMARINER_NAMESPACE)
        cidrs = (cluster.get("spec") or {}).get("globalCIDR") or []
        if not cidrs:
            raise ValueError(f"submariner cluster {self.cluster_id!r} has no global CIDR")
        return cidrs[0]

    def _get_global_egress_ip(self) -> list[str]:
        egress = self.client.get(CLUSTER_GLOBAL_EGRESS_IP, GLOBAL_EGRESS_IP_NAME)
        return list((egress.get("status") or {}).get("allocatedIPs") or [])

    def handle_create_or_update(self, tunnel: Mapping[str, Any]) -> None:
        tunnel = copy.deepcopy(dict(tunnel))
        meta = tunnel.setdefault("metadata", {})
        finalizers = list(meta.get("finalizers") or [])
        if TUNNEL_FINALIZER not in finalizers:
            meta["finalizers"] = [*finalizers, TUNNEL_FINALIZER]
            tunnel = self.client.update(VPC_NAT_TUNNEL, tunnel)

        spec = tunnel.setdefault("spec", {})
        status = tunnel.setdefault("status", {})
        remote_name = f"{spec.get('remoteVpc', '')}.{spec.get('remoteCluster', '')}"
        try:
            remote = self.client.get(GATEWAY_EXIP, remote_name, NAT_GW_NAMESPACE)
        except NotFoundError:
            logger.error("Error get GatewayExIp %s", remote_name)
            raise
        remote_spec = remote.get("spec") or {}

        if not status.get("initialized"):
            self._initialize(tunnel, remote_spec)
            return
        changed = (
            status.get("remoteIP", "") != spec.get("remoteIP", "")
            or status.get("internalIP", "") != spec.get("internalIP", "")
            or status.get("interfaceAddr", "") != spec.get("interfaceAddr", "")
            or status.get("localGw", "") != spec.get("localGw", "")
            or status.get("remoteGlobalnetCIDR", "") != remote_spec.get("globalNetCIDR", "")
            or status.get("type", "") != spec.get("type", "")
        )
        if changed:
            self._reconfigure(tunnel, remote_spec)

    def _initialize(self, tunnel: Object, remote_spec: Mapping[str, Any]) -> None:
        spec = tunnel["spec"]
        status = tunnel["status"]
        local = self.client.get(GATEWAY_EXIP, f"{spec.get('localVpc', '')}.{self.cluster_id}", NAT_GW_NAMESPACE)
        local_gw = (_meta(local).get("labels") or {}).get("localGateway", "")

        status.update(
            localGw=local_gw,
            remoteIP=remote_spec.get("externalIP", ""),
            remoteGlobalnetCIDR=remote_spec.get("globalNetCIDR", ""),
            initialized=True,
            interfaceAddr=spec.get("interfaceAddr", ""),
            type=spec.get("type", ""),
        )
        pod = get_nat_gw_pod(local_gw, self.client)
        status["globalnetCIDR"] = self._get_globalnet_cidr()
        status["ovnGwIP"] = get_ovn_gw_ip(pod)
        status["globalEgressIP"] = self._get_global_egress_ip()
        status["internalIP"] = get_gw_extern_ip(pod)

        self._exec(pod, gen_create_tunnel_cmd(self.factory, tunnel))
        self._exec(pod, gen_globalnet_route(tunnel))
        tunnel = self.client.update_status(VPC_NAT_TUNNEL, tunnel)

        spec = tunnel.setdefault("spec", {})
        spec["internalIP"] = tunnel["status"]["internalIP"]
        spec["localGw"] = local_gw
        spec["remoteIP"] = remote_spec.get("externalIP", "")
        labels = tunnel["metadata"].setdefault("labels", {})
        labels["localVpc"] = spec.get("localVpc", "")
        labels["remoteCluster"] = spec.get("remoteCluster", "")
        labels["remoteVpc"] = spec.get("remoteVpc", "")
        self.client.update(VPC_NAT_TUNNEL, tunnel)
        logger.info("create VpcNatTunnel success: %s", _meta(tunnel).get("name", ""))

    def _reconfigure(self, tunnel: Object, remote_spec: Mapping[str, Any]) -> None:
        spec = tunnel["spec"]
        status = tunnel["status"]
        if status.get("type", "") != spec.get("type", ""):
            logger.error("tunnel type should not change: %r", tunnel)
            spec["type"] = status.get("type", "")
            self.client.update(VPC_NAT_TUNNEL, tunnel)
            return
        if not spec.get("localGw") and not spec.get("remoteIP") and not spec.get("internalIP"):
            return

        if (
            status.get("localGw", "") == spec.get("localGw", "")
            and spec.get("internalIP", "") == status.get("internalIP", "")
        ):
            pod = get_nat_gw_pod(status.get("localGw", ""), self.client)
            self._exec(pod, gen_del_globalnet_route(tunnel))
            self._exec(pod, gen_delete_tunnel_cmd(self.factory, tunnel))
        else:
            status["localGw"] = spec.get("localGw", "")
            pod = get_nat_gw_pod(status["localGw"], self.client)

        logger.info(
            "VpcNatTunnel Spec: %s,%s,%s", spec.get("localGw", ""), spec.get("internalIP", ""), spec.get("remoteIP", "")
        )
        status["remoteIP"] = spec.get("remoteIP", "")
        status["remoteGlobalnetCIDR"] = remote_spec.get("globalNetCIDR", "")
        status["internalIP"] = spec.get("internalIP", "")
        status["interfaceAddr"] = spec.get("interfaceAddr", "")

        self._exec(pod, gen_create_tunnel_cmd(self.factory, tunnel))
        self._exec(pod, gen_globalnet_route(tunnel))
        tunnel = self.client.update_status(VPC_NAT_TUNNEL, tunnel)

        spec = tunnel.setdefault("spec", {})
        labels = tunnel.setdefault("metadata", {}).setdefault("labels", {})
        wanted = {
            "remoteCluster": spec.get("remoteCluster", ""),
            "remoteVpc": spec.get("remoteVpc", ""),
            "localVpc": spec.get("localVpc", ""),
        }
        if any(labels.get(key) != value for key, value in wanted.items()):
            labels.update(wanted)
            self.client.update(VPC_NAT_TUNNEL, tunnel)
        logger.info("update VpcNatTunnel success: %s", _meta(tunnel).get("name", ""))

    def handle_delete(self, tunnel: Mapping[str, Any]) -> None:
        tunnel = copy.deepcopy(dict(tunnel))
        meta = tunnel.setdefault("metadata", {})
        finalizers = list(meta.get("finalizers") or [])
        if TUNNEL_FINALIZER not in finalizers:
            return
        pod = get_nat_gw_pod((tunnel.get("status") or {}).get("localGw", ""), self.client)
        self._exec(pod, gen_del_globalnet_route(tunnel))
        self._exec(pod, gen_delete_tunnel_cmd(self.factory, tunnel))
        meta["finalizers"] = [f for f in finalizers if f != TUNNEL_FINALIZER]
        self.client.update(VPC_NAT_TUNNEL, tunnel)
        logger.info("delete VpcNatTunnel success: %s", meta.get("name", ""))