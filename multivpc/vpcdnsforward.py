"""Reconciles VpcDnsForward objects so a VPC's DNS can resolve clusterset.local names."""

from __future__ import annotations

import copy
import logging
from typing import Any, Mapping

from .kube import InMemoryClient, NotFoundError

logger = logging.getLogger(__name__)

Object = dict[str, Any]

VPC_DNS_FORWARD = "VpcDnsForward"
CONFIG_MAP = "ConfigMap"
SERVICE = "Service"
SUBNET = "Subnet"
VPC_DNS = "VpcDns"
DEPLOYMENT = "Deployment"

DNS_FINALIZER = "dns.finalizer.example.io"
KUBE_SYSTEM = "kube-system"
COREFILE_CONFIGMAP = "vpc-dns-corefile"
COREFILE_KEY = "Corefile"
CORE_DNS_SERVICE = "kube-dns"
DEFAULT_SUBNET = "ovn-default"
CLUSTERSET_DOMAIN = "clusterset.local"
ROOT_ZONE = ".:53 {"
ROUTE_MARKER = "ip -4 route add"
VPC_DNS_DEPLOYMENT_PREFIX = "vpc-dns-"


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def add_clusterset_forward(corefile: str, cluster_ip: str) -> str:
    """Insert a clusterset.local zone forwarding to ``cluster_ip`` before the root zone.

    Only the first root zone is touched.
    """
    addition = f"{CLUSTERSET_DOMAIN}:53 {{\n    forward . {cluster_ip}\n  }}\n  {ROOT_ZONE}"
    return corefile.replace(ROOT_ZONE, addition, 1)


def _first_init_container(deployment: Object) -> Object:
    containers = (
        deployment.setdefault("spec", {})
        .setdefault("template", {})
        .setdefault("spec", {})
        .get("initContainers")
        or []
    )
    if not containers:
        name = _meta(deployment).get("name", "")
        raise ValueError(f"deployment {name!r} has no init containers")
    return containers[0]


class VpcDnsForwardReconciler:
    """Adds or removes the route and forward zone that link a VPC's DNS to the cluster DNS."""

    def __init__(self, client: InMemoryClient) -> None:
        self.client = client

    def reconcile(self, namespace: str, name: str) -> None:
        try:
            vpc_dns = self.client.get(VPC_DNS_FORWARD, name, namespace)
        except NotFoundError:
            return
        if _meta(vpc_dns).get("deletionTimestamp"):
            self._handle_delete(vpc_dns)
        else:
            self._handle_create_or_update(vpc_dns)

    def _handle_create_or_update(self, vpc_dns: Object) -> None:
        vpc_dns = copy.deepcopy(vpc_dns)
        meta = vpc_dns.setdefault("metadata", {})
        finalizers = list(meta.get("finalizers") or [])
        if DNS_FINALIZER not in finalizers:
            meta["finalizers"] = [*finalizers, DNS_FINALIZER]
            try:
                vpc_dns = self.client.update(VPC_DNS_FORWARD, vpc_dns)
            except NotFoundError:
                logger.error("Error Update VpcDnsForward")
                raise
        try:
            self.create_dns_connection(vpc_dns)
        except Exception:
            logger.error("Error createDnsConnection to VpcDnsForward")
            raise
        logger.info("create VpcDnsForward success: %s", _meta(vpc_dns).get("name", ""))

    def _handle_delete(self, vpc_dns: Object) -> None:
        vpc_dns = copy.deepcopy(vpc_dns)
        meta = vpc_dns.setdefault("metadata", {})
        finalizers = list(meta.get("finalizers") or [])
        if DNS_FINALIZER not in finalizers:
            return
        try:
            self.delete_dns_connection(vpc_dns)
        except Exception:
            logger.error("Error deleteDnsConnection to VpcDnsForward")
            raise
        meta["finalizers"] = [f for f in finalizers if f != DNS_FINALIZER]
        self.client.update(VPC_DNS_FORWARD, vpc_dns)
        logger.info("delete VpcDnsForward success: %s", meta.get("name", ""))

    def _get_corefile_config_map(self) -> Object:
        try:
            return self.client.get(CONFIG_MAP, COREFILE_CONFIGMAP, KUBE_SYSTEM)
        except NotFoundError:
            logger.error("Error Get ConfigMap %s", COREFILE_CONFIGMAP)
            raise

    def _get_core_dns_service(self) -> Object:
        try:
            return self.client.get(SERVICE, CORE_DNS_SERVICE, KUBE_SYSTEM)
        except NotFoundError:
            logger.error("Error Get Service %s", CORE_DNS_SERVICE)
            raise

    def check_dns_corefile(self) -> bool:
        """True if the VPC DNS Corefile already forwards clusterset.local."""
        config_map = self._get_corefile_config_map()
        corefile = (config_map.get("data") or {}).get(COREFILE_KEY, "")
        return CLUSTERSET_DOMAIN in corefile

    def update_dns_corefile(self) -> None:
        """Make the VPC DNS forward clusterset.local to the cluster DNS service."""
        config_map = self._get_corefile_config_map()
        service = self._get_core_dns_service()
        cluster_ip = (service.get("spec") or {}).get("clusterIP", "")
        data = config_map.setdefault("data", {})
        data[COREFILE_KEY] = add_clusterset_forward(data.get(COREFILE_KEY, ""), cluster_ip)
        self.client.update(CONFIG_MAP, config_map)

    def gen_route_to_core_dns(self) -> str:
        """Route from a custom VPC to the cluster DNS via the default subnet's gateway."""
        service = self._get_core_dns_service()
        try:
            subnet = self.client.get(SUBNET, DEFAULT_SUBNET)
        except NotFoundError:
            logger.error("Error Get Subnet %s", DEFAULT_SUBNET)
            raise
        cluster_ip = (service.get("spec") or {}).get("clusterIP", "")
        gateway = (subnet.get("spec") or {}).get("gateway", "")
        return f"{ROUTE_MARKER} {cluster_ip} via {gateway} dev net1;"

    def get_vpc_dns_deployment(self, vpc_dns: Mapping[str, Any]) -> Object:
        """The deployment of the active VpcDns serving the forward's VPC."""
        vpc = (vpc_dns.get("spec") or {}).get("vpc", "")
        active = next(
            (
                item
                for item in self.client.list(VPC_DNS)
                if (item.get("spec") or {}).get("vpc") == vpc and (item.get("status") or {}).get("active")
            ),
            {},
        )
        name = VPC_DNS_DEPLOYMENT_PREFIX + _meta(active).get("name", "")
        try:
            return self.client.get(DEPLOYMENT, name, KUBE_SYSTEM)
        except NotFoundError:
            logger.error("Error Get vpcDnsDeployment %s", name)
            raise

    def create_dns_connection(self, vpc_dns: Mapping[str, Any]) -> None:
        """Ensure the Corefile forward and add the route to the VPC DNS init container."""
        if not self.check_dns_corefile():
            self.update_dns_corefile()
        route = self.gen_route_to_core_dns()
        deployment = self.get_vpc_dns_deployment(vpc_dns)
        container = _first_init_container(deployment)
        container["command"] = [
            command + route if ROUTE_MARKER in command and route not in command else command
            for command in container.get("command") or []
        ]
        self.client.update(DEPLOYMENT, deployment)

    def delete_dns_connection(self, vpc_dns: Mapping[str, Any]) -> None:
        """Remove the route from the VPC DNS init container."""
        route = self.gen_route_to_core_dns()
        deployment = self.get_vpc_dns_deployment(vpc_dns)
        container = _first_init_container(deployment)
        container["command"] = [command.replace(route, "") for command in container.get("command") or []]
        self.client.update(DEPLOYMENT, deployment)