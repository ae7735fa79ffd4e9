"""Tests for version parsing, skew validation and auto-step planning (versions.py)."""

import pytest
import requests

from kfleet import versions
from kfleet.errors import VersionSkewError
from kfleet.versions import (
    Version,
    compute_auto_steps,
    fetch_latest_patch,
    parse_version,
    plan_upgrade,
    validate_version_skew,
)


LATEST = {(1, 31): "1.31.9", (1, 32): "1.32.5", (1, 33): "1.33.3"}


async def fake_resolver(major: int, minor: int) -> str:
    return LATEST[(major, minor)]


def test_parse_version():
    assert parse_version("v1.32.4") == Version(1, 32, 4)
    assert str(parse_version(" 1.30.0\n")) == "1.30.0"
    assert parse_version("1.9.0") < parse_version("1.10.0")


@pytest.mark.parametrize("raw", ["1.32", "1.32.x", "", "v1.32.4-rc.1"])
def test_parse_version_rejects(raw):
    with pytest.raises(VersionSkewError, match="Invalid version format"):
        parse_version(raw)


def test_skew_allows_patch_and_next_minor():
    validate_version_skew("1.32.0", "1.32.4")
    validate_version_skew("1.32.4", "1.33.0")
    validate_version_skew("1.31.0", "1.32.5")
    with pytest.raises(VersionSkewError):
        validate_version_skew("1.31.0", "1.33.0")


@pytest.mark.parametrize(
    "current, target, message",
    [
        ("1.32.0", "1.32.0", "already at target"),
        ("1.33.0", "1.32.9", "Downgrade"),
        ("1.30.0", "1.32.0", "Cannot skip minor"),
        ("1.32.0", "2.0.0", "Major version"),
    ],
)
def test_skew_rejections(current, target, message):
    with pytest.raises(VersionSkewError, match=message):
        validate_version_skew(current, target)


@pytest.mark.asyncio
async def test_auto_steps_between_minors():
    """1.30.0 -> 1.33.2 passes through the latest 1.31 and 1.32 patches."""
    assert await compute_auto_steps("1.30.0", "1.33.2", fake_resolver) == ["1.31.9", "1.32.5"]


@pytest.mark.asyncio
async def test_auto_steps_none_for_adjacent_minor():
    assert await compute_auto_steps("1.32.0", "1.33.2", fake_resolver) == []


@pytest.mark.asyncio
async def test_auto_steps_rejects_wrong_channel():
    async def wrong(major, minor):
        return "1.40.0"

    with pytest.raises(VersionSkewError, match="returned"):
        await compute_auto_steps("1.30.0", "1.32.0", wrong)


@pytest.mark.asyncio
async def test_plan_with_auto_step():
    plan = await plan_upgrade("1.30.0", "1.33.2", auto_step=True, resolver=fake_resolver)
    assert plan.intermediate_steps == ("1.31.9", "1.32.5")
    assert plan.steps == ["1.31.9", "1.32.5", "1.33.2"]


@pytest.mark.asyncio
async def test_plan_without_auto_step_rejects_minor_skip():
    with pytest.raises(VersionSkewError, match="Cannot skip minor"):
        await plan_upgrade("1.30.0", "1.33.2", resolver=fake_resolver)


@pytest.mark.asyncio
async def test_plan_single_hop():
    plan = await plan_upgrade("1.32.1", "1.33.0", auto_step=True, resolver=fake_resolver)
    assert plan.steps == ["1.33.0"]


class FakeResponse:
    def __init__(self, text: str, status: int = 200):
        self.text = text
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


def test_fetch_latest_patch(monkeypatch):
    urls: list[str] = []

    def fake_get(url, timeout):
        urls.append(url)
        return FakeResponse("v1.32.5\n")

    monkeypatch.setattr(versions.requests, "get", fake_get)

    assert fetch_latest_patch(1, 32) == "1.32.5"
    assert urls == ["https://dl.k8s.io/release/stable-1.32.txt"]


def test_fetch_latest_patch_http_error(monkeypatch):
    monkeypatch.setattr(versions.requests, "get", lambda url, timeout: FakeResponse("", 404))
    with pytest.raises(VersionSkewError, match="Failed to fetch"):
        fetch_latest_patch(1, 99)
