"""Equal-cost multi-path static routes on OVN logical routers."""

from __future__ import annotations

import enum
import logging
import subprocess
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from .kube import NotFoundError

logger = logging.getLogger(__name__)

MAIN_ROUTE_TABLE = ""
POLICY_DST_IP = "dst-ip"

Runner = Callable[[Sequence[str]], "tuple[int, str]"]


class RouteEvent(enum.IntEnum):
    ADD = 1
    UPDATE = 2
    DELETE = 3


class RouteError(Exception):
    """Raised when a route could not be added or removed."""


class NorthboundClient(Protocol):
    def add_logical_router_static_route(
        self, lr_name: str, route_table: str, policy: str, prefix: str,
        bfd_id: Optional[str], *next_hops: str,
    ) -> None: ...

    def delete_logical_router_static_route(
        self, lr_name: str, route_table: str, policy: str, prefix: str, next_hop: str,
    ) -> None: ...


def _run_command(args: Sequence[str]) -> tuple[int, str]:
    completed = subprocess.run(
        list(args), stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, check=False
    )
    return completed.returncode, completed.stdout


def validate_parameters(*params: str) -> None:
    """Raise ValueError if any parameter is empty."""
    if any(param == "" for param in params):
        raise ValueError("parameter cannot be empty")


class CommandRouteControl:
    """Manages ECMP routes by running ``ovn-nbctl``."""

    def __init__(self, runner: Runner = _run_command) -> None:
        self._runner = runner

    def _run(self, args: Sequence[str], action: str) -> None:
        try:
            returncode, output = self._runner(args)
        except OSError as exc:
            raise RouteError(f"failed to {action} ECMP route: {exc}, output: ") from exc
        if returncode != 0:
            raise RouteError(f"failed to {action} ECMP route: exit status {returncode}, output: {output}")

    def add_or_update_ecmp_route(self, logical_router_name: str, cidr: str, *next_hops: str) -> None:
        self.validate_route_parameters(logical_router_name, cidr, *next_hops)
        for next_hop in next_hops:
            self._run(
                ["ovn-nbctl", "--wait=hv", "lr-route-add", logical_router_name, cidr, next_hop,
                 "--ecmp-symmetric-reply=true"],
                "add/update",
            )

    def delete_ecmp_route(self, logical_router_name: str, cidr: str, *next_hops: str) -> None:
        self.validate_route_parameters(logical_router_name, cidr, *next_hops)
        for next_hop in next_hops:
            self._run(
                ["ovn-nbctl", "--wait=hv", "lr-route-del", logical_router_name, cidr, next_hop],
                "delete",
            )

    def validate_route_parameters(self, lr: str, prefix: str, *next_hops: str) -> None:
        logger.debug("Validating route parameters...")
        if not lr or not prefix:
            raise ValueError("logical router name and prefix must not be empty")
        if any(not hop.strip() for hop in next_hops):
            raise ValueError("next hop cannot be an empty string")
        logger.debug("Route parameters validation passed")


class ApiRouteControl:
    """Manages ECMP routes through an OVN northbound client."""

    def __init__(self, nb_client: NorthboundClient) -> None:
        self.nb_client = nb_client

    def add_or_update_ecmp_route(self, logical_router_name: str, cidr: str, *next_hops: str) -> None:
        logger.info(
            "AddOrUpdateECMPRoute called with router: %s, CIDR: %s, NextHops: %s",
            logical_router_name, cidr, list(next_hops),
        )
        if not logical_router_name or not cidr:
            raise ValueError("logicalRouterName and CIDR must not be empty")
        self.nb_client.add_logical_router_static_route(
            logical_router_name, MAIN_ROUTE_TABLE, POLICY_DST_IP, cidr, None, *next_hops
        )
        logger.info("Successfully added ECMP route")

    def delete_ecmp_route(self, logical_router_name: str, cidr: str, *next_hops: str) -> None:
        logger.info(
            "DeleteECMPRoute called with router: %s, CIDR: %s, NextHops: %s",
            logical_router_name, cidr, list(next_hops),
        )
        if not logical_router_name or not cidr:
            raise ValueError("logicalRouterName and CIDR must not be empty")
        for next_hop in next_hops:
            if not next_hop:
                logger.debug("Skipping empty nextHop")
                continue
            self.nb_client.delete_logical_router_static_route(
                logical_router_name, MAIN_ROUTE_TABLE, POLICY_DST_IP, cidr, next_hop
            )
        logger.info("Successfully deleted ECMP route")


def handle_gw_route(
    event_type: int,
    gw: Optional[Mapping[str, Any]],
    prefix: str,
    client: Any,
    nb_client: NorthboundClient,
) -> None:
    """Add, update or delete the route to ``prefix`` via the gateway's LAN IP."""
    if gw is None:
        raise ValueError("gateway cannot be nil")
    if not prefix:
        raise ValueError("prefix cannot be empty")

    spec = gw.get("spec") or {}
    try:
        vpc = client.get("Vpc", spec.get("vpc", ""))
    except NotFoundError as exc:
        raise RouteError(f"error getting VPC: {exc}") from exc
    lr = vpc["metadata"]["name"]

    control = ApiRouteControl(nb_client)
    lan_ip = spec.get("lanIp", "")
    if event_type in (RouteEvent.ADD, RouteEvent.UPDATE):
        control.add_or_update_ecmp_route(lr, prefix, lan_ip)
    elif event_type == RouteEvent.DELETE:
        control.delete_ecmp_route(lr, prefix, lan_ip)
    else:
        raise ValueError("Unknown Event Type")