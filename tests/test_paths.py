"""Tests for loopbridge.paths."""

from __future__ import annotations

import json
import os

import pytest

from loopbridge.models.credentials import Credential
from loopbridge.paths import (
    format_uptime,
    get_bridge_dir,
    get_credential_path,
    get_inbox_dir,
    get_outbox_dir,
    is_process_alive,
    read_credential,
    remove_credential,
    write_credential,
)


class TestLayout:
    def test_directories(self, tmp_path):
        bridge_dir = get_bridge_dir(tmp_path)
        assert bridge_dir == tmp_path / ".bridge"
        assert get_outbox_dir(bridge_dir) == bridge_dir / "outbox"
        assert get_inbox_dir(bridge_dir) == bridge_dir / "inbox"
        assert get_credential_path(bridge_dir) == bridge_dir / "bridge.json"

    def test_custom_dir_name(self, tmp_path):
        assert get_bridge_dir(tmp_path, ".bridge-dev") == tmp_path / ".bridge-dev"


class TestCredentialFile:
    def test_write_then_read(self, tmp_path):
        bridge_dir = get_bridge_dir(tmp_path)
        cred = Credential(port=7891, token="ab" * 16, pid=os.getpid())
        path = write_credential(bridge_dir, cred)

        data = json.loads(path.read_text())
        assert set(data) == {"port", "token", "pid", "startedAt"}

        loaded = read_credential(bridge_dir)
        assert loaded == cred

    def test_read_missing(self, tmp_path):
        assert read_credential(tmp_path) is None

    @pytest.mark.parametrize(
        "content",
        ["not json", json.dumps({"port": "x", "token": "t", "pid": 1}), json.dumps({"token": "t"})],
    )
    def test_read_malformed(self, tmp_path, content):
        (tmp_path / "bridge.json").write_text(content)
        assert read_credential(tmp_path) is None

    def test_remove(self, tmp_path):
        write_credential(tmp_path, Credential(port=1, token="t", pid=1))
        assert remove_credential(tmp_path) is True
        assert remove_credential(tmp_path) is False


class TestProcessHelpers:
    def test_current_process_is_alive(self):
        assert is_process_alive(os.getpid())

    def test_non_positive_pid(self):
        assert not is_process_alive(0)
        assert not is_process_alive(-5)

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(0, "0s"), (42, "42s"), (185, "3m 5s"), (7800, "2h 10m")],
    )
    def test_format_uptime(self, seconds, expected):
        assert format_uptime(seconds) == expected
