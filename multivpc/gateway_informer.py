"""Watches NAT gateway StatefulSets and keeps GatewayExIps, VPC routes and tunnels current."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from .kube import AlreadyExistsError, InMemoryClient, NotFoundError, Operation, labels_match
from .vpcnattunnel import (
    GATEWAY_EXIP,
    NAT_GW_LABEL,
    NAT_GW_NAMESPACE,
    SUBMARINER_CLUSTER,
    SUBMARINER_NAMESPACE,
    VPC_NAT_TUNNEL,
    PodStateError,
    get_gw_extern_ip,
    get_nat_gw_pod,
)

logger = logging.getLogger(__name__)

Object = dict[str, Any]

STATEFUL_SET = "StatefulSet"
VPC_NAT_GATEWAY = "VpcNatGateway"
VPC = "Vpc"

NAT_GW_STS_PREFIX = "vpc-nat-gw-"
LOGICAL_ROUTER_ANNOTATION = "ovn.kubernetes.io/logical_router"
IP_ADDRESS_ANNOTATION = "ovn.kubernetes.io/ip_address"
NAT_GW_SELECTOR = {NAT_GW_LABEL: "true"}

_HANDLED_ERRORS = (LookupError, AlreadyExistsError, PodStateError, ValueError)


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _gateway_name(statefulset: Mapping[str, Any]) -> str:
    return _meta(statefulset).get("name", "").removeprefix(NAT_GW_STS_PREFIX)


def _available_replicas(statefulset: Mapping[str, Any]) -> int:
    return int((statefulset.get("status") or {}).get("availableReplicas") or 0)


def _template_annotations(statefulset: Mapping[str, Any]) -> Mapping[str, Any]:
    template = (statefulset.get("spec") or {}).get("template") or {}
    return _meta(template).get("annotations") or {}


def _logical_router(statefulset: Mapping[str, Any]) -> Optional[str]:
    return _template_annotations(statefulset).get(LOGICAL_ROUTER_ANNOTATION)


class GatewayInformer:
    """Reacts to NAT gateways coming up, going down and being removed."""

    def __init__(self, cluster_id: str, client: InMemoryClient) -> None:
        self.cluster_id = cluster_id
        self.client = client

    # event handlers

    def on_add(self, statefulset: Mapping[str, Any]) -> None:
        """Publish a GatewayExIp for a newly available gateway of a VPC that has none."""
        if _available_replicas(statefulset) != 1:
            return
        try:
            self._add(statefulset)
        except _HANDLED_ERRORS as exc:
            logger.error("Error handling added gateway %s: %s", _gateway_name(statefulset), exc)

    def on_update(self, old: Mapping[str, Any], new: Mapping[str, Any]) -> None:
        """Fail over when a gateway goes down; refresh the address when it comes back."""
        old_available = _available_replicas(old)
        new_available = _available_replicas(new)
        try:
            if old_available == 1 and new_available == 0:
                self._fail_over(new)
            if old_available == 0 and new_available == 1:
                self._recover(new)
        except _HANDLED_ERRORS as exc:
            logger.error("Error handling updated gateway %s: %s", _gateway_name(new), exc)

    def on_delete(self, statefulset: Mapping[str, Any]) -> None:
        """Move traffic to another active gateway, or withdraw the GatewayExIp."""
        try:
            self._delete(statefulset)
        except _HANDLED_ERRORS as exc:
            logger.error("Error handling deleted gateway %s: %s", _gateway_name(statefulset), exc)

    def start(self) -> Callable[[], None]:
        """Handle every NAT gateway StatefulSet now and on each change.

        Returns a function that stops the watch.
        """

        def matches(obj: Mapping[str, Any]) -> bool:
            meta = _meta(obj)
            return (meta.get("namespace") or "") == NAT_GW_NAMESPACE and labels_match(
                meta.get("labels"), NAT_GW_SELECTOR
            )

        def dispatch(op: Operation, obj: Object, old: Optional[Object]) -> None:
            if not matches(obj):
                return
            if op is Operation.CREATE:
                self.on_add(obj)
            elif op is Operation.UPDATE:
                self.on_update(old if old is not None else obj, obj)
            else:
                self.on_delete(obj)

        unsubscribe = self.client.subscribe(STATEFUL_SET, dispatch)
        for statefulset in self.client.list(STATEFUL_SET, namespace=NAT_GW_NAMESPACE, labels=NAT_GW_SELECTOR):
            self.on_add(statefulset)
        logger.info("Gateway informer started")
        return unsubscribe

    # helpers

    def _add(self, statefulset: Mapping[str, Any]) -> None:
        gateway_name = _gateway_name(statefulset)
        nat_gw = self.client.get(VPC_NAT_GATEWAY, gateway_name)
        pod = get_nat_gw_pod(gateway_name, self.client)
        gw_spec = nat_gw.get("spec") or {}
        vpc_name = gw_spec.get("vpc", "")
        exip_name = f"{vpc_name}.{self.cluster_id}"
        try:
            self.client.get(GATEWAY_EXIP, exip_name, NAT_GW_NAMESPACE)
            return
        except NotFoundError:
            pass

        vpc = self.client.get(VPC, vpc_name)
        lan_ip = gw_spec.get("lanIp", "")
        routes = (vpc.get("spec") or {}).get("staticRoutes") or []
        if any(route.get("nextHopIP") != lan_ip for route in routes):
            return
        cluster = self.client.get(SUBMARINER_CLUSTER, self.cluster_id, SUBMARINER_NAMESPACE)
        external_ip = get_gw_extern_ip(pod)
        cidrs = (cluster.get("spec") or {}).get("globalCIDR") or []
        if not cidrs:
            raise ValueError(f"submariner cluster {self.cluster_id!r} has no global CIDR")

        self.client.create(
            GATEWAY_EXIP,
            {
                "metadata": {
                    "name": exip_name,
                    "namespace": _meta(pod).get("namespace", ""),
                    "labels": {
                        "localVpc": vpc_name,
                        "localGateway": _meta(nat_gw).get("name", gateway_name),
                        "localCluster": self.cluster_id,
                    },
                },
                "spec": {"externalIP": external_ip, "globalNetCIDR": cidrs[0]},
            },
        )
        logger.info("GatewayExIp create success: %s", exip_name)

    def _find_gateway_exip(self, gateway_name: str) -> Optional[Object]:
        candidates = self.client.list(
            GATEWAY_EXIP,
            namespace=NAT_GW_NAMESPACE,
            labels={"localGateway": gateway_name, "localCluster": self.cluster_id},
        )
        return next(
            (item for item in candidates if (_meta(item).get("labels") or {}).get("localGateway") == gateway_name),
            None,
        )

    def _find_active_gateway(self, router: Optional[str], exclude: Optional[str] = None) -> Optional[Object]:
        gateways = self.client.list(STATEFUL_SET, namespace=NAT_GW_NAMESPACE, labels=NAT_GW_SELECTOR)
        return next(
            (
                sts
                for sts in gateways
                if _available_replicas(sts) == 1
                and _meta(sts).get("name") != exclude
                and _logical_router(sts) == router
            ),
            None,
        )

    def _tunnels_of(self, vpc_name: str) -> list[Object]:
        return self.client.list(VPC_NAT_TUNNEL, labels={"localVpc": vpc_name})

    def _move_to(self, exip: Object, vpc: Object, next_sts: Mapping[str, Any]) -> tuple[str, str]:
        """Point the VPC routes and the GatewayExIp at ``next_sts``; return its name and address."""
        next_name = _gateway_name(next_sts)
        next_hop = _template_annotations(next_sts).get(IP_ADDRESS_ANNOTATION, "")
        for route in (vpc.get("spec") or {}).get("staticRoutes") or []:
            route["nextHopIP"] = next_hop
        pod = get_nat_gw_pod(next_name, self.client)
        external_ip = get_gw_extern_ip(pod)
        self.client.update(VPC, vpc)
        logger.info("vpc route updated: %s", _meta(vpc).get("name", ""))

        exip.setdefault("spec", {})["externalIP"] = external_ip
        exip.setdefault("metadata", {}).setdefault("labels", {})["localGateway"] = next_name
        self.client.update(GATEWAY_EXIP, exip)
        logger.info("GatewayExIp updated: %s", _meta(exip).get("name", ""))
        return next_name, external_ip

    def _repoint_tunnels(self, tunnels: list[Object], internal_ip: str, local_gw: Optional[str]) -> None:
        for tunnel in tunnels:
            spec = tunnel.setdefault("spec", {})
            spec["internalIP"] = internal_ip
            if local_gw is not None:
                spec["localGw"] = local_gw
            self.client.update(VPC_NAT_TUNNEL, tunnel)

    def _fail_over(self, statefulset: Mapping[str, Any]) -> None:
        exip = self._find_gateway_exip(_gateway_name(statefulset))
        if exip is None:
            return
        vpc = self.client.get(VPC, (_meta(exip).get("labels") or {}).get("localVpc", ""))
        tunnels = self._tunnels_of(_meta(vpc).get("name", ""))
        next_sts = self._find_active_gateway(_logical_router(statefulset), exclude=_meta(statefulset).get("name"))
        if next_sts is None:
            return
        next_name, external_ip = self._move_to(exip, vpc, next_sts)
        self._repoint_tunnels(tunnels, external_ip, next_name)

    def _recover(self, statefulset: Mapping[str, Any]) -> None:
        gateway_name = _gateway_name(statefulset)
        exip = self._find_gateway_exip(gateway_name)
        if exip is None:
            return
        pod = get_nat_gw_pod(gateway_name, self.client)
        external_ip = get_gw_extern_ip(pod)
        exip.setdefault("spec", {})["externalIP"] = external_ip
        self.client.update(GATEWAY_EXIP, exip)
        logger.info("GatewayExIp updated: %s", _meta(exip).get("name", ""))
        tunnels = self._tunnels_of((_meta(exip).get("labels") or {}).get("localVpc", ""))
        self._repoint_tunnels(tunnels, external_ip, None)

    def _delete(self, statefulset: Mapping[str, Any]) -> None:
        exip = self._find_gateway_exip(_gateway_name(statefulset))
        if exip is None:
            return
        vpc_name = (_meta(exip).get("labels") or {}).get("localVpc", "")
        vpc = self.client.get(VPC, vpc_name)
        next_sts = self._find_active_gateway(_logical_router(statefulset))
        if next_sts is None:
            self.client.delete(GATEWAY_EXIP, exip)
            return
        next_name, external_ip = self._move_to(exip, vpc, next_sts)
        self._repoint_tunnels(self._tunnels_of(vpc_name), external_ip, next_name)