"""Tests for certificate renewal (renew.py)."""

import pytest

from kfleet.errors import BundleTransferError, OperationFailed
from kfleet.nodes import NodeList
from kfleet.renew import renew


CPS = NodeList.from_csv("10.0.0.1,10.0.0.2,10.0.0.3")


@pytest.mark.asyncio
async def test_renew_runs_on_every_control_plane_in_order(config, fake_session):
    report = await renew(config, CPS, ["--certs", "apiserver"], session=fake_session)

    assert report.ok
    assert [h for k, h, _ in fake_session.calls if k == "exec"] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert all(c.endswith("renew --certs apiserver") for c in fake_session.commands("exec"))


@pytest.mark.asyncio
async def test_renew_continues_after_failure(config, fake_session):
    fake_session.register_exec("renew", returncode=1, host="10.0.0.2")

    with pytest.raises(OperationFailed) as excinfo:
        await renew(config, CPS, session=fake_session)

    report = excinfo.value.report
    assert [o.node.host for o in report.failed] == ["10.0.0.2"]
    assert len(report.succeeded) == 2
    assert len(fake_session.commands("exec")) == 3


@pytest.mark.asyncio
async def test_bundle_transfer_failure_is_fatal(config, fake_session):
    fake_session.copy_failures.add("10.0.0.3")

    with pytest.raises(BundleTransferError) as excinfo:
        await renew(config, CPS, session=fake_session)

    assert list(excinfo.value.failures) == ["root@10.0.0.3"]
    assert fake_session.commands("exec") == []
    # Reason: bundles that did arrive are still cleaned up.
    assert len(fake_session.commands("rm", host="10.0.0.1")) == 1
