"""Shell commands that create and remove VpcNatTunnel interfaces."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

DEFAULT_VID = "100"
DEFAULT_PORT = "4789"


class TunnelType(str, enum.Enum):
    VXLAN = "vxlan"
    GRE = "gre"


def _name(tunnel: Mapping[str, Any]) -> str:
    return (tunnel.get("metadata") or {}).get("name", "")


def _status(tunnel: Mapping[str, Any]) -> Mapping[str, Any]:
    return tunnel.get("status") or {}


def _link_commands(tunnel: Mapping[str, Any], create: str) -> str:
    name = _name(tunnel)
    set_up = f"ip link set {name} up"
    addr = f"ip addr add {_status(tunnel).get('interfaceAddr', '')} dev {name}"
    return ";".join((create, set_up, addr))


class TunnelOperation(ABC):
    """Builds the commands that set up and tear down one tunnel."""

    @abstractmethod
    def create_cmd(self) -> str:
        """Command line that creates the tunnel interface."""

    @abstractmethod
    def delete_cmd(self) -> str:
        """Command line that removes the tunnel interface."""


@dataclass
class GreOperation(TunnelOperation):
    tunnel: Mapping[str, Any]

    def create_cmd(self) -> str:
        status = _status(self.tunnel)
        create = (
            f"ip tunnel add {_name(self.tunnel)} mode gre "
            f"remote {status.get('remoteIP', '')} local {status.get('internalIP', '')} ttl 255"
        )
        return _link_commands(self.tunnel, create)

    def delete_cmd(self) -> str:
        return f"ip tunnel del {_name(self.tunnel)}"


def get_vid_and_port(tunnel: Mapping[str, Any]) -> tuple[str, str]:
    """Return the VXLAN id and port from the tunnel's labels, or the defaults."""
    labels = (tunnel.get("metadata") or {}).get("labels") or {}
    return labels.get("vid", DEFAULT_VID), labels.get("vx-port", DEFAULT_PORT)


@dataclass
class VxlanOperation(TunnelOperation):
    tunnel: Mapping[str, Any]

    def create_cmd(self) -> str:
        status = _status(self.tunnel)
        vid, port = get_vid_and_port(self.tunnel)
        create = (
            f"ip link add {_name(self.tunnel)} type vxlan id {vid} dev net1 dstport {port} "
            f"remote {status.get('remoteIP', '')} local {status.get('internalIP', '')}"
        )
        return _link_commands(self.tunnel, create)

    def delete_cmd(self) -> str:
        return f"ip link del {_name(self.tunnel)}"


class TunnelOperationFactory:
    """Picks the tunnel operation matching a tunnel's ``spec.type``; GRE by default."""

    def create_tunnel_operation(self, tunnel: Mapping[str, Any]) -> TunnelOperation:
        tunnel_type = (tunnel.get("spec") or {}).get("type", "")
        if tunnel_type == TunnelType.VXLAN.value:
            return VxlanOperation(tunnel)
        return GreOperation(tunnel)