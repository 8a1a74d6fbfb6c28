"""
Compose adapter tests.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from appctl.compose import ComposeEngine, compose_files_for  # noqa: E402
from appctl.exceptions import ExternalCommandError, InvalidManifestError  # noqa: E402

from conftest import write_app  # noqa: E402


def _fake_popen(lines, returncode=0):
    proc = MagicMock()
    proc.stdout = iter(lines)
    proc.returncode = returncode
    proc.wait.return_value = returncode
    return proc


class TestComposeFiles:
    def test_plain_app_uses_common_fragment(self, settings):
        write_app(settings.app_data_dir("web"), "web")
        files = compose_files_for(settings, "web")
        assert [f.name for f in files] == ["common.yml", "docker-compose.yml"]
        assert files[-1] == settings.app_data_dir("web") / "docker-compose.yml"

    def test_proxy_and_tor_fragments_in_order(self, settings):
        settings.remote_access = True
        write_app(settings.app_data_dir("web"), "web", proxy=True)
        files = compose_files_for(settings, "web")
        assert [f.name for f in files] == ["app-proxy.yml", "tor.yml", "common.yml", "docker-compose.yml"]

    def test_missing_fragment_is_skipped(self, settings):
        (settings.compose_dir / "common.yml").unlink()
        write_app(settings.app_data_dir("web"), "web")
        assert [f.name for f in compose_files_for(settings, "web")] == ["docker-compose.yml"]

    def test_missing_app_compose_file(self, settings):
        settings.app_data_dir("web").mkdir(parents=True)
        with pytest.raises(InvalidManifestError):
            compose_files_for(settings, "web")


class TestComposeEngine:
    def test_command_uses_project_name_and_files(self, settings):
        write_app(settings.app_data_dir("web"), "web")
        cmd = ComposeEngine(settings).command("web", ["up", "--detach"])
        assert cmd[:4] == ["docker", "compose", "--project-name", "web"]
        assert cmd[-2:] == ["up", "--detach"]
        assert cmd.count("--file") == 2

    def test_dry_run_executes_nothing(self, settings):
        settings.dry_run = True
        write_app(settings.app_data_dir("web"), "web")
        with patch("appctl.compose.subprocess.Popen") as mock_popen, \
                patch("appctl.compose.subprocess.run") as mock_run:
            ComposeEngine(settings).up("web", {"APP_ID": "web"})
        mock_popen.assert_not_called()
        mock_run.assert_not_called()

    def test_streams_output_with_environment(self, settings, capsys):
        write_app(settings.app_data_dir("web"), "web")
        with patch("appctl.compose.subprocess.Popen", return_value=_fake_popen(["Pulling web\n"])) as mock_popen:
            ComposeEngine(settings).pull("web", {"APP_PORT": "8080"})

        cmd = mock_popen.call_args.args[0]
        assert cmd[-1] == "pull"
        assert mock_popen.call_args.kwargs["env"]["APP_PORT"] == "8080"
        assert "[COMPOSE] Pulling web" in capsys.readouterr().out

    def test_non_zero_exit_raises(self, settings):
        write_app(settings.app_data_dir("web"), "web")
        with patch("appctl.compose.subprocess.Popen", return_value=_fake_popen(["no such image\n"], 1)):
            with pytest.raises(ExternalCommandError) as exc_info:
                ComposeEngine(settings).pull("web", {})
        assert exc_info.value.returncode == 1
        assert "no such image" in exc_info.value.output

    def test_down_flags(self, settings):
        write_app(settings.app_data_dir("web"), "web")
        engine = ComposeEngine(settings)
        with patch.object(engine, "_execute") as mock_execute:
            engine.down("web", {})
            engine.down("web", {}, remove_images=True, remove_volumes=True)

        plain = mock_execute.call_args_list[0].args[0]
        full = mock_execute.call_args_list[1].args[0]
        assert plain[-2:] == ["down", "--remove-orphans"]
        assert "--rmi" not in plain
        assert full[-5:] == ["down", "--remove-orphans", "--rmi", "all", "--volumes"]

    def test_images_parses_config_output(self, settings):
        write_app(settings.app_data_dir("web"), "web")
        completed = subprocess.CompletedProcess([], 0, stdout="example/web:1.0.0\n\nnginx:1.25\n", stderr="")
        with patch("appctl.compose.subprocess.run", return_value=completed):
            images = ComposeEngine(settings).images("web", {})
        assert images == {"example/web:1.0.0", "nginx:1.25"}

    def test_remove_images_is_best_effort(self, settings):
        results = [
            subprocess.CompletedProcess([], 1, stdout="", stderr="image is in use"),
            subprocess.CompletedProcess([], 0, stdout="", stderr=""),
        ]
        with patch("appctl.compose.subprocess.run", side_effect=results) as mock_run:
            failed = ComposeEngine(settings).remove_images({"b:1", "a:1"})

        assert failed == ["a:1"]
        assert mock_run.call_count == 2
        assert mock_run.call_args_list[1].args[0] == ["docker", "image", "rm", "b:1"]
