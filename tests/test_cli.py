"""Tests for the dump-viewer CLI."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
import yaml

from dump_viewer.cli.main import main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "dump-viewer.yaml"
    path.write_text(yaml.dump({"web": {"port": 3555}, "dump_server": {"port": 9930}}))
    return path


def _response(payload, text: str | None = None) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    resp.text = text if text is not None else json.dumps(payload)
    resp.raise_for_status.return_value = None
    return resp


class TestConfigValidate:
    def test_valid(self, config_file, capsys):
        main(["--config", str(config_file), "config", "validate"])
        out = capsys.readouterr().out
        assert "Config is valid." in out
        assert "127.0.0.1:3555" in out

    def test_invalid(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"store": {"capacity": 0}}))
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(path), "config", "validate"])
        assert exc_info.value.code == 1
        assert "store.capacity" in capsys.readouterr().out

    def test_unreadable_config(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            main(["--config", str(tmp_path / "missing.yaml"), "config", "validate"])
        assert "Error loading config" in capsys.readouterr().err


class TestRemoteCommands:
    def test_status(self, config_file, capsys):
        status = {
            "dumpServerRunning": True, "dumpServerPort": 9930, "webServerPort": 3555,
            "connectedClients": 2, "tcpClientConnected": False, "totalDumps": 7,
        }
        with patch("dump_viewer.cli.main.httpx.get", return_value=_response(status)) as get:
            main(["--config", str(config_file), "status"])
        get.assert_called_once()
        assert get.call_args.args[0] == "http://127.0.0.1:3555/api/status"
        out = capsys.readouterr().out
        assert "running (port 9930)" in out
        assert "Stored dumps:      7" in out

    def test_status_unreachable(self, config_file, capsys):
        with patch("dump_viewer.cli.main.httpx.get", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(config_file), "status", "--url", "http://viewer:9000/"])
        assert exc_info.value.code == 1
        assert "http://viewer:9000" in capsys.readouterr().err

    def test_clear(self, config_file, capsys):
        with patch("dump_viewer.cli.main.httpx.delete",
                   return_value=_response({"success": True, "cleared": 3})):
            main(["--config", str(config_file), "clear"])
        assert "Cleared 3 dump(s)." in capsys.readouterr().out

    def test_export_to_file(self, config_file, tmp_path, capsys):
        body = json.dumps([{"id": "a"}, {"id": "b"}])
        out_file = tmp_path / "dumps.json"
        with patch("dump_viewer.cli.main.httpx.get", return_value=_response(None, body)) as get:
            main(["--config", str(config_file), "export", "--category", "queries", "-o", str(out_file)])
        assert get.call_args.kwargs["params"] == {"category": "queries"}
        assert out_file.read_text() == body
        assert "Exported 2 dump(s)" in capsys.readouterr().out


class TestHelperCommand:
    def test_writes_helper(self, config_file, tmp_path, capsys):
        with patch("dump_viewer.cli.main.LauncherFiles") as files_cls:
            files_cls.return_value.create_helper.return_value = tmp_path / "dump-viewer-helper.php"
            main(["--config", str(config_file), "helper"])
        files_cls.return_value.create_helper.assert_called_once_with(
            port=9930, vendor_dir=None, host="127.0.0.1",
        )
        assert "require_once" in capsys.readouterr().out


class TestServe:
    def test_serve_applies_overrides(self, config_file, capsys):
        with patch("uvicorn.run") as run, \
                patch("dump_viewer.cli.main.is_port_available", return_value=True), \
                patch("dump_viewer.cli.main.configure_logging"):
            main(["--config", str(config_file), "serve", "--port", "3777",
                  "--no-open", "--categorize"])
        run.assert_called_once()
        app = run.call_args.args[0]
        viewer = app.state.viewer
        assert viewer.config.web.port == 3777
        assert viewer.config.classifier.categorize is True
        assert run.call_args.kwargs["port"] == 3777
        assert "http://127.0.0.1:3777" in capsys.readouterr().out

    def test_defaults_to_serve(self, config_file):
        with patch("dump_viewer.cli.main.cmd_serve") as serve:
            main(["--config", str(config_file)])
        serve.assert_called_once()

    def test_web_port_taken(self, config_file, capsys):
        with patch("dump_viewer.cli.main.is_port_available", return_value=False), \
                patch("dump_viewer.cli.main.configure_logging"):
            with pytest.raises(SystemExit):
                main(["--config", str(config_file), "serve", "--no-open"])
        assert "already in use" in capsys.readouterr().err

    def test_invalid_attach_rejected(self, config_file, capsys):
        with pytest.raises(SystemExit):
            main(["--config", str(config_file), "serve", "--attach", "nohost"])
        assert "client.attach" in capsys.readouterr().err
