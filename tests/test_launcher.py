"""Tests for the generated PHP launcher and helper files."""

from __future__ import annotations

from dump_viewer.core.framer import SEPARATOR
from dump_viewer.core.launcher import HELPER_FILENAME, LauncherFiles


class TestServerScript:
    def test_script_contents(self, tmp_path):
        files = LauncherFiles(tmp_path)
        path = files.create_server_script("127.0.0.1", 9913, tmp_path / "vendor")
        code = path.read_text()

        assert path.parent == tmp_path
        assert path.name.startswith("symfony-dump-server-")
        assert code.startswith("<?php")
        assert f"require_once '{(tmp_path / 'vendor' / 'autoload.php').as_posix()}';" in code
        assert "new DumpServer('127.0.0.1:9913')" in code
        assert SEPARATOR.decode() in code
        assert "SOURCE_INFO" in code
        assert "$server->start();" in code

    def test_quote_in_vendor_path_escaped(self, tmp_path):
        vendor = tmp_path / "o'brien" / "vendor"
        code = LauncherFiles(tmp_path).create_server_script("127.0.0.1", 9912, vendor).read_text()
        assert "o\\'brien" in code

    def test_cleanup_removes_everything(self, tmp_path):
        files = LauncherFiles(tmp_path)
        script = files.create_server_script("127.0.0.1", 9912, tmp_path)
        helper = files.create_helper(9912, tmp_path)
        assert files.files == sorted([script, helper])

        files.cleanup()
        assert not script.exists()
        assert not helper.exists()
        assert files.files == []
        files.cleanup()

    def test_cleanup_keeping_helper(self, tmp_path):
        files = LauncherFiles(tmp_path)
        script = files.create_server_script("127.0.0.1", 9912, tmp_path)
        helper = files.create_helper(9912, tmp_path)
        assert files.has_helper

        files.cleanup(keep_helper=True)
        assert not script.exists()
        assert helper.exists()
        assert files.files == [helper]

        files.cleanup()
        assert not helper.exists()
        assert not files.has_helper


class TestHelper:
    def test_helper_contents(self, tmp_path):
        path = LauncherFiles(tmp_path).create_helper(port=9914, vendor_dir=tmp_path / "vendor")
        code = path.read_text()
        assert path.name == HELPER_FILENAME
        assert "tcp://127.0.0.1:9914" in code
        assert "ServerDumper" in code
        assert "SourceContextProvider" in code

    def test_helper_defaults_to_cwd_vendor(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        code = LauncherFiles(tmp_path).create_helper().read_text()
        assert (tmp_path / "vendor" / "autoload.php").as_posix() in code
        assert "tcp://127.0.0.1:9912" in code
