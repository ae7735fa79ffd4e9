"""Tests for etcd backup and restore (etcd.py)."""

import pytest

from kfleet.errors import KfleetError, OperationFailed
from kfleet.etcd import MIN_SNAPSHOT_BYTES, backup, restore
from kfleet.nodes import NodeAddress


CP = NodeAddress("root", "10.0.0.1")
UBUNTU_CP = NodeAddress("ubuntu", "10.0.0.1")


@pytest.mark.asyncio
async def test_backup_downloads_snapshot(config, fake_session, tmp_path):
    fake_session.downloads["etcd-snapshot.db"] = b"\0" * 4096
    target = tmp_path / "backups" / "snap.db"

    report = await backup(config, CP, target, session=fake_session)

    assert report.ok
    assert target.stat().st_size == 4096
    (cmd,) = fake_session.commands("exec")
    assert "backup --snapshot-path /tmp/kfleet.1/etcd-snapshot.db" in cmd
    assert fake_session.commands("copy_from") == ["/tmp/kfleet.1/etcd-snapshot.db"]
    # Reason: root needs no chmod to read its own snapshot.
    assert not any("chmod 644" in c for c in fake_session.commands())


@pytest.mark.asyncio
async def test_backup_as_non_root_makes_snapshot_readable(config, fake_session, tmp_path):
    fake_session.downloads["etcd-snapshot.db"] = b"\0" * 4096
    await backup(config, UBUNTU_CP, tmp_path / "snap.db", session=fake_session)

    assert "sudo -n chmod 644 /tmp/kfleet.1/etcd-snapshot.db" in fake_session.commands()
    assert fake_session.commands("exec")[0].startswith("sudo -n sh ")


@pytest.mark.asyncio
async def test_backup_rejects_tiny_snapshot(config, fake_session, tmp_path):
    fake_session.downloads["etcd-snapshot.db"] = b"x" * (MIN_SNAPSHOT_BYTES - 1)

    with pytest.raises(OperationFailed) as excinfo:
        await backup(config, CP, tmp_path / "snap.db", session=fake_session)
    assert "too small" in excinfo.value.report.outcomes[0].message


@pytest.mark.asyncio
async def test_backup_remote_failure_skips_download(config, fake_session, tmp_path):
    fake_session.register_exec("backup --snapshot-path", returncode=1, stderr="etcdctl failed")

    with pytest.raises(OperationFailed):
        await backup(config, CP, tmp_path / "snap.db", session=fake_session)
    assert fake_session.commands("copy_from") == []


@pytest.mark.asyncio
async def test_restore_uploads_then_restores(config, fake_session, tmp_path):
    snapshot = tmp_path / "snap.db"
    snapshot.write_bytes(b"\0" * 4096)

    report = await restore(config, CP, snapshot, session=fake_session)

    assert report.ok
    assert fake_session.commands("copy_to") == ["/tmp/kfleet.1/setup-k8s.sh", "/tmp/kfleet.1/etcd-snapshot.db"]
    (cmd,) = fake_session.commands("exec")
    assert "restore --snapshot-path /tmp/kfleet.1/etcd-snapshot.db" in cmd


@pytest.mark.asyncio
async def test_restore_checks_local_snapshot_first(config, fake_session, tmp_path):
    with pytest.raises(KfleetError, match="not found"):
        await restore(config, CP, tmp_path / "absent.db", session=fake_session)

    tiny = tmp_path / "tiny.db"
    tiny.write_bytes(b"x")
    with pytest.raises(KfleetError, match="too small"):
        await restore(config, CP, tiny, session=fake_session)
    assert fake_session.calls == []
