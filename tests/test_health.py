"""Tests for cluster health checks (health.py)."""

import pytest

from kfleet.health import check_cluster, check_core_pods, check_nodes_ready, verify_node_count
from kfleet.nodes import NodeAddress


CP = NodeAddress("root", "10.0.0.1")
UBUNTU_CP = NodeAddress("ubuntu", "10.0.0.1")

HEALTHY_PODS = (
    "etcd-cp-1 1/1 Running 0 5m\n"
    "kube-apiserver-cp-1 1/1 Running 0 5m\n"
    "kube-proxy-job 0/1 Completed 0 5m\n"
)


def _healthy(session):
    session.register("get --raw /readyz", stdout="ok")
    session.register("get nodes --no-headers", stdout="cp-1 Ready control-plane 5m v1.33.0\nwk-1 Ready <none> 4m v1.33.0\n")
    session.register("get --raw /healthz/etcd", stdout="ok")
    session.register("get pods -n kube-system --no-headers", stdout=HEALTHY_PODS)


@pytest.mark.asyncio
async def test_healthy_cluster_passes(fake_session):
    _healthy(fake_session)

    report = await check_cluster(fake_session, UBUNTU_CP, "pre")

    assert report.ok
    assert report.phase == "pre"
    commands = fake_session.commands(host="10.0.0.1")
    assert commands[0] == "sudo -n kubectl --kubeconfig=/etc/kubernetes/admin.conf get --raw /readyz"
    assert len(commands) == 4


@pytest.mark.asyncio
async def test_every_failing_check_is_reported(fake_session):
    fake_session.register("get --raw /readyz", returncode=1)
    fake_session.register("get nodes --no-headers", stdout="cp-1 Ready\nwk-1 NotReady\n")
    fake_session.register("get --raw /healthz/etcd", stdout="")
    fake_session.register("get pods -n kube-system --no-headers", stdout="coredns-x 0/1 CrashLoopBackOff 4 5m\n")

    report = await check_cluster(fake_session, CP)

    assert not report.ok
    assert report.failures == [
        "API server: not ready",
        "Not ready nodes: wk-1(NotReady)",
        "etcd health check returned: no response",
        "Non-running kube-system pods: coredns-x(CrashLoopBackOff)",
    ]


@pytest.mark.asyncio
async def test_empty_listings_fail(fake_session):
    assert await check_nodes_ready(fake_session, CP) == "Could not retrieve node list"
    assert await check_core_pods(fake_session, CP) == "Could not retrieve kube-system pods"


@pytest.mark.asyncio
async def test_verify_node_count(fake_session):
    fake_session.register("get nodes --no-headers", stdout="cp-1 Ready\nwk-1 Ready\n")
    assert await verify_node_count(fake_session, CP, 2)
    assert not await verify_node_count(fake_session, CP, 3)


@pytest.mark.asyncio
async def test_unhealthy_cluster_does_not_fail_remove(config, fake_session):
    """Post-remove checks only warn; the removal itself decides the outcome."""
    from kfleet.nodes import NodeList
    from kfleet.remove import remove

    fake_session.register("get --raw /readyz", returncode=1)

    report = await remove(config, CP, NodeList.from_csv("10.0.1.1"), session=fake_session)

    assert report.ok
    assert "kubectl --kubeconfig=/etc/kubernetes/admin.conf get --raw /readyz" in fake_session.commands(host="10.0.0.1")
