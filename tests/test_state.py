"""Tests for resumable operation state (state.py)."""

import json
import os
import stat

import pytest

from kfleet.errors import StateError
from kfleet.state import StateStatus, StateStore


def test_init_writes_private_state_file(tmp_path):
    store = StateStore(tmp_path / "state")
    state_id = store.init("deploy")

    path = tmp_path / "state" / f"{state_id}.json"
    assert state_id.startswith("deploy-")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    data = json.loads(path.read_text())
    assert data["kind"] == "deploy"
    assert data["status"] == "running"


def test_steps_and_values_persist(tmp_path):
    store = StateStore(tmp_path)
    state_id = store.init("upgrade")
    store.mark_step_done("upgrade_cp_10.0.0.1")
    store.mark_step_done("upgrade_cp_10.0.0.1")
    store.set("target_version", "1.33.2")

    reloaded = StateStore(tmp_path).peek(state_id)
    assert reloaded.done == ["upgrade_cp_10.0.0.1"]
    assert reloaded.values == {"target_version": "1.33.2"}


def test_is_step_done_without_active_state(tmp_path):
    assert StateStore(tmp_path).is_step_done("init_cp") is False


def test_failed_state_is_resumable(tmp_path):
    store = StateStore(tmp_path)
    state_id = store.init("deploy")
    store.mark_step_done("init_cp")
    store.fail()

    resumed = StateStore(tmp_path)
    assert resumed.open("deploy", resume=True) == state_id
    assert resumed.is_step_done("init_cp")
    assert resumed.active.status == StateStatus.RUNNING


def test_completed_state_is_never_resumed(tmp_path):
    store = StateStore(tmp_path)
    done_id = store.init("deploy")
    store.complete()

    assert StateStore(tmp_path).find_resumable("deploy") is None
    fresh = StateStore(tmp_path)
    assert fresh.open("deploy", resume=True) != done_id
    with pytest.raises(StateError, match="already completed"):
        StateStore(tmp_path).load(done_id)


def test_fail_after_complete_keeps_seal(tmp_path):
    store = StateStore(tmp_path)
    state_id = store.init("renew")
    store.complete()
    store.fail()
    assert store.peek(state_id).status == StateStatus.COMPLETED


def test_resume_ignores_other_kinds(tmp_path):
    store = StateStore(tmp_path)
    store.init("deploy")
    assert StateStore(tmp_path).find_resumable("upgrade") is None


def test_open_without_resume_starts_fresh(tmp_path):
    store = StateStore(tmp_path)
    first = store.init("deploy")
    store.fail()
    assert StateStore(tmp_path).open("deploy", resume=False) != first


def test_unreadable_state_file(tmp_path):
    (tmp_path / "deploy-broken.json").write_text("{not json")
    store = StateStore(tmp_path)
    assert store.find_resumable("deploy") is None
    with pytest.raises(StateError):
        store.peek("deploy-broken")


def test_active_without_state_raises(tmp_path):
    with pytest.raises(StateError):
        StateStore(tmp_path).active
