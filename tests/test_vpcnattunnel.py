from unittest import mock

import pytest

from multivpc.kube import InMemoryClient, NotFoundError
from multivpc.tunnel import TunnelOperationFactory
from multivpc.vpcnattunnel import (
    EXTERNAL_IP_ANNOTATION,
    GATEWAY_ANNOTATION,
    NAT_GW_CONTAINER,
    POD_RETRY_DELAY,
    TUNNEL_FINALIZER,
    CommandFailedError,
    PodStateError,
    VpcNatTunnelReconciler,
    gen_create_tunnel_cmd,
    gen_del_globalnet_route,
    gen_delete_tunnel_cmd,
    gen_globalnet_route,
    gen_nat_gw_sts_name,
    get_gw_extern_ip,
    get_nat_gw_pod,
    get_ovn_gw_ip,
)

EXTERNAL_IP = "172.18.0.10"
OVN_GW = "10.0.1.1"
REMOTE_IP = "172.19.0.20"
REMOTE_CIDR = "242.1.0.0/16"
LOCAL_CIDR = "242.0.0.0/16"
EGRESS = ["242.0.0.1", "242.0.0.8"]


class FakeExecutor:
    def __init__(self, stderr=""):
        self.calls = []
        self.stderr = stderr

    def __call__(self, pod_name, namespace, container, command):
        self.calls.append((pod_name, namespace, container, list(command)))
        return "", self.stderr

    @property
    def commands(self):
        return [call[3][2] for call in self.calls]


def make_pod(name, gw, phase="Running", annotations=None):
    return {
        "metadata": {
            "name": name,
            "namespace": "kube-system",
            "labels": {"app": gen_nat_gw_sts_name(gw), "ovn.kubernetes.io/vpc-nat-gw": "true"},
            "annotations": annotations
            if annotations is not None
            else {EXTERNAL_IP_ANNOTATION: EXTERNAL_IP, GATEWAY_ANNOTATION: OVN_GW},
        },
        "status": {"phase": phase},
    }


@pytest.fixture
def client():
    c = InMemoryClient()
    c.create("Pod", make_pod("vpc-nat-gw-gw1-0", "gw1"))
    c.create("GatewayExIp", {
        "metadata": {"name": "vpc1.cluster1", "namespace": "kube-system", "labels": {"localGateway": "gw1"}},
        "spec": {"externalIP": EXTERNAL_IP, "globalNetCIDR": LOCAL_CIDR},
    })
    c.create("GatewayExIp", {
        "metadata": {"name": "vpc2.cluster2", "namespace": "kube-system"},
        "spec": {"externalIP": REMOTE_IP, "globalNetCIDR": REMOTE_CIDR},
    })
    c.create("Cluster", {
        "metadata": {"name": "cluster1", "namespace": "submariner-operator"},
        "spec": {"globalCIDR": [LOCAL_CIDR]},
    })
    c.create("ClusterGlobalEgressIP", {
        "metadata": {"name": "cluster-egress.submariner.io"},
        "status": {"allocatedIPs": EGRESS},
    })
    c.create("VpcNatTunnel", {
        "metadata": {"name": "tun0", "namespace": "default"},
        "spec": {
            "remoteVpc": "vpc2",
            "remoteCluster": "cluster2",
            "localVpc": "vpc1",
            "interfaceAddr": "10.100.0.1/24",
            "type": "gre",
        },
    })
    return c


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def reconciler(client, executor):
    return VpcNatTunnelReconciler(client, "cluster1", executor)


def test_gen_nat_gw_sts_name():
    assert gen_nat_gw_sts_name("gw1") == "vpc-nat-gw-gw1"


def test_get_nat_gw_pod_returns_running_pod(client):
    pod = get_nat_gw_pod("gw1", client)
    assert pod["metadata"]["name"] == "vpc-nat-gw-gw1-0"


def test_get_nat_gw_pod_missing(client):
    with pytest.raises(NotFoundError):
        get_nat_gw_pod("absent", client)


@mock.patch("multivpc.vpcnattunnel.time.sleep")
def test_get_nat_gw_pod_too_many(sleep, client):
    client.create("Pod", make_pod("vpc-nat-gw-gw1-1", "gw1"))
    with pytest.raises(PodStateError, match="too many pod"):
        get_nat_gw_pod("gw1", client)
    sleep.assert_called_once_with(POD_RETRY_DELAY)


@mock.patch("multivpc.vpcnattunnel.time.sleep")
def test_get_nat_gw_pod_not_running(sleep, client):
    client.create("Pod", make_pod("vpc-nat-gw-gw2-0", "gw2", phase="Pending"))
    with pytest.raises(PodStateError, match="pod is not active now"):
        get_nat_gw_pod("gw2", client)
    assert sleep.called


def test_pod_annotations():
    pod = make_pod("p", "gw1")
    assert get_gw_extern_ip(pod) == EXTERNAL_IP
    assert get_ovn_gw_ip(pod) == OVN_GW
    bare = make_pod("p", "gw1", annotations={})
    with pytest.raises(PodStateError):
        get_gw_extern_ip(bare)
    with pytest.raises(PodStateError):
        get_ovn_gw_ip(bare)


def test_globalnet_route_and_its_inverse():
    tunnel = {
        "metadata": {"name": "tun0"},
        "status": {
            "globalnetCIDR": LOCAL_CIDR,
            "ovnGwIP": OVN_GW,
            "remoteGlobalnetCIDR": REMOTE_CIDR,
            "globalEgressIP": EGRESS,
        },
    }
    add = gen_globalnet_route(tunnel)
    parts = add.split(";")
    assert len(parts) == 3
    assert parts[1].endswith(f"{REMOTE_CIDR} dev tun0")
    assert parts[2].endswith(f"--to-source {EGRESS[0]}-{EGRESS[-1]}")
    expected_del = add.replace("ip route add", "ip route del").replace(" -A ", " -D ")
    assert gen_del_globalnet_route(tunnel) == expected_del


def test_globalnet_route_needs_egress_ips():
    with pytest.raises(ValueError):
        gen_globalnet_route({"metadata": {"name": "t"}, "status": {}})


def test_tunnel_cmds_follow_factory():
    factory = TunnelOperationFactory()
    tunnel = {"metadata": {"name": "t"}, "spec": {"type": "vxlan"}, "status": {}}
    assert gen_create_tunnel_cmd(factory, tunnel) == factory.create_tunnel_operation(tunnel).create_cmd()
    assert gen_delete_tunnel_cmd(factory, tunnel) == factory.create_tunnel_operation(tunnel).delete_cmd()


def test_reconcile_missing_object_does_nothing(reconciler, executor):
    assert reconciler.reconcile("default", "nothing") is None
    assert executor.calls == []


def test_reconcile_creates_tunnel(reconciler, client, executor):
    reconciler.reconcile("default", "tun0")
    stored = client.get("VpcNatTunnel", "tun0", "default")
    status = stored["status"]
    assert status["initialized"] is True
    assert status["localGw"] == "gw1"
    assert status["remoteIP"] == REMOTE_IP
    assert status["remoteGlobalnetCIDR"] == REMOTE_CIDR
    assert status["internalIP"] == EXTERNAL_IP
    assert status["globalnetCIDR"] == LOCAL_CIDR
    assert status["ovnGwIP"] == OVN_GW
    assert status["globalEgressIP"] == EGRESS
    assert stored["spec"]["internalIP"] == EXTERNAL_IP
    assert stored["spec"]["remoteIP"] == REMOTE_IP
    assert stored["spec"]["localGw"] == "gw1"
    assert TUNNEL_FINALIZER in stored["metadata"]["finalizers"]
    assert stored["metadata"]["labels"] == {"localVpc": "vpc1", "remoteCluster": "cluster2", "remoteVpc": "vpc2"}
    factory = TunnelOperationFactory()
    assert executor.commands == [gen_create_tunnel_cmd(factory, stored), gen_globalnet_route(stored)]
    assert all(call[0] == "vpc-nat-gw-gw1-0" and call[2] == NAT_GW_CONTAINER for call in executor.calls)
    assert executor.calls[0][3][:2] == ["sh", "-c"]


def test_reconcile_unchanged_runs_nothing(reconciler, client, executor):
    reconciler.reconcile("default", "tun0")
    before = client.get("VpcNatTunnel", "tun0", "default")
    count = len(executor.calls)
    assert reconciler.reconcile("default", "tun0") is None
    assert len(executor.calls) == count
    after = client.get("VpcNatTunnel", "tun0", "default")
    assert after["status"] == before["status"]
    assert after["spec"] == before["spec"]


def test_reconcile_remote_ip_change_rebuilds(reconciler, client, executor):
    reconciler.reconcile("default", "tun0")
    before = client.get("VpcNatTunnel", "tun0", "default")
    before["spec"]["remoteIP"] = "172.19.0.99"
    client.update("VpcNatTunnel", before)
    before = client.get("VpcNatTunnel", "tun0", "default")
    executor.calls.clear()

    reconciler.reconcile("default", "tun0")
    after = client.get("VpcNatTunnel", "tun0", "default")
    assert after["status"]["remoteIP"] == "172.19.0.99"
    factory = TunnelOperationFactory()
    assert executor.commands == [
        gen_del_globalnet_route(before),
        gen_delete_tunnel_cmd(factory, before),
        gen_create_tunnel_cmd(factory, after),
        gen_globalnet_route(after),
    ]


def test_reconcile_type_change_is_reverted(reconciler, client, executor):
    reconciler.reconcile("default", "tun0")
    stored = client.get("VpcNatTunnel", "tun0", "default")
    stored["spec"]["type"] = "vxlan"
    client.update("VpcNatTunnel", stored)
    executor.calls.clear()

    reconciler.reconcile("default", "tun0")
    assert client.get("VpcNatTunnel", "tun0", "default")["spec"]["type"] == "gre"
    assert executor.calls == []


def test_reconcile_delete_removes_tunnel(reconciler, client, executor):
    reconciler.reconcile("default", "tun0")
    stored = client.get("VpcNatTunnel", "tun0", "default")
    client.delete("VpcNatTunnel", stored)
    executor.calls.clear()

    reconciler.reconcile("default", "tun0")
    factory = TunnelOperationFactory()
    assert executor.commands == [gen_del_globalnet_route(stored), gen_delete_tunnel_cmd(factory, stored)]
    with pytest.raises(NotFoundError):
        client.get("VpcNatTunnel", "tun0", "default")


def test_command_error_stops_initialization(client):
    failing = FakeExecutor(stderr="  RTNETLINK answers: File exists \n")
    reconciler = VpcNatTunnelReconciler(client, "cluster1", failing)
    with pytest.raises(CommandFailedError, match="^RTNETLINK answers: File exists$"):
        reconciler.reconcile("default", "tun0")
    assert not client.get("VpcNatTunnel", "tun0", "default").get("status", {}).get("initialized")
    assert len(failing.calls) == 1


def test_missing_remote_gateway_exip(reconciler, client):
    stored = client.get("VpcNatTunnel", "tun0", "default")
    stored["spec"]["remoteVpc"] = "nowhere"
    client.update("VpcNatTunnel", stored)
    with pytest.raises(NotFoundError):
        reconciler.reconcile("default", "tun0")