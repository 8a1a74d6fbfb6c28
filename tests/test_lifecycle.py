"""
Lifecycle orchestration tests.

Docker is replaced by a recording engine; hooks, registry, environment and
file copies run for real against a temporary root.
"""

import os
import shutil
import signal
from pathlib import Path
from typing import Dict, List, Set, Tuple

import pytest
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from appctl.exceptions import (  # noqa: E402
    AppNotFoundError,
    CircularDependencyError,
    ExternalCommandError,
    NotInstalledError,
)
from appctl.lifecycle import UPDATE_PENDING_MARKER, AppLifecycle, AppState, UpdateGuard  # noqa: E402

from conftest import write_app  # noqa: E402


LOG_HOOK = '#!/bin/sh\necho "$APPCTL_HOOK" >> "$APPCTL_ROOT/hooks.log"\n'
ALL_HOOKS = {
    name: LOG_HOOK
    for name in (
        "pre-install", "post-install", "pre-uninstall", "post-uninstall",
        "pre-start", "post-start", "pre-stop", "post-stop", "pre-update", "post-update",
    )
}


class FakeEngine:
    """Records compose calls instead of running docker."""

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.envs: List[Dict[str, str]] = []
        self.fail_on: Set[str] = set()
        self.image_sets: List[Set[str]] = []
        self.removed: Set[str] = set()

    def _record(self, action: str, app_id: str, env: Dict[str, str]) -> None:
        self.calls.append((action, app_id))
        self.envs.append(dict(env))
        if action in self.fail_on:
            raise ExternalCommandError(["docker", "compose", action], 1, f"{action} failed")

    def pull(self, app_id, env):
        self._record("pull", app_id, env)

    def up(self, app_id, env):
        self._record("up", app_id, env)

    def down(self, app_id, env, remove_images=False, remove_volumes=False):
        self._record("down-all" if remove_images and remove_volumes else "down", app_id, env)

    def images(self, app_id, env):
        self._record("images", app_id, env)
        return self.image_sets.pop(0) if self.image_sets else set()

    def logs(self, app_id, env, args=()):
        self._record("logs", app_id, env)

    def passthrough(self, app_id, env, args):
        self._record(" ".join(args), app_id, env)

    def remove_images(self, images):
        self.removed |= set(images)
        return []

    def actions(self) -> List[str]:
        return [action for action, _ in self.calls]


def _hook_log(settings) -> List[str]:
    log = settings.root / "hooks.log"
    return log.read_text(encoding="utf-8").split() if log.exists() else []


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def lifecycle(settings, engine, sleeps) -> AppLifecycle:
    return AppLifecycle(settings, engine=engine, sleep=sleeps.append)


class TestInstall:
    def test_install_sequence(self, settings, repo_dir, lifecycle, engine):
        write_app(
            repo_dir / "web", "web", port=3000, hooks=ALL_HOOKS,
            extra_files={"config/web.conf.j2": "listen={{ APP_PORT }}\n"},
        )

        lifecycle.install("web")

        data_dir = settings.app_data_dir("web")
        assert (data_dir / "app.toml").exists()
        assert (data_dir / "config" / "web.conf").read_text(encoding="utf-8") == "listen=3000\n"
        assert engine.actions() == ["pull", "up"]
        assert _hook_log(settings) == ["pre-install", "pre-start", "post-start", "post-install"]
        assert lifecycle.registry.list_installed() == ["web"]
        assert lifecycle.registry.origin_of("web") == "official"
        assert lifecycle.state_of("web") == AppState.RUNNING

    def test_registry_written_after_containers_start(self, repo_dir, lifecycle, engine):
        write_app(repo_dir / "web", "web")
        seen = []
        original = lifecycle.registry.add_installed_app

        def add(app_id, origin=None):
            seen.append(list(engine.actions()))
            original(app_id, origin)

        lifecycle.registry.add_installed_app = add
        lifecycle.install("web")
        assert seen == [["pull", "up"]]

    @pytest.mark.parametrize("failing", ["pull", "up"])
    def test_failed_compose_leaves_app_unregistered(self, repo_dir, lifecycle, engine, failing):
        write_app(repo_dir / "web", "web")
        engine.fail_on.add(failing)

        with pytest.raises(ExternalCommandError):
            lifecycle.install("web")

        assert lifecycle.registry.list_installed() == []

    def test_unknown_app(self, lifecycle):
        with pytest.raises(AppNotFoundError):
            lifecycle.install("ghost")

    def test_cycle_aborts_before_copy(self, settings, repo_dir, lifecycle, engine):
        write_app(repo_dir / "x", "x", dependencies=["y"])
        write_app(repo_dir / "y", "y", dependencies=["x"])

        with pytest.raises(CircularDependencyError):
            lifecycle.install("x")

        assert not settings.app_data_dir("x").exists()
        assert engine.calls == []

    def test_install_from_named_repository(self, settings, repo_dir, lifecycle):
        write_app(repo_dir / "web", "web", version="1.0.0")
        write_app(settings.repos_dir / "community" / "web", "web", version="9.9.9")

        lifecycle.install("web", repo="community")

        assert lifecycle.registry.origin_of("web") == "community"
        assert 'version = "9.9.9"' in (settings.app_data_dir("web") / "app.toml").read_text(encoding="utf-8")


class TestStartStop:
    def test_stop_does_not_require_registration(self, settings, lifecycle, engine):
        write_app(settings.app_data_dir("web"), "web", hooks=ALL_HOOKS)

        lifecycle.stop("web")

        assert engine.calls == [("down", "web")]
        assert _hook_log(settings) == ["pre-stop", "post-stop"]
        assert lifecycle.state_of("web") == AppState.STOPPED

    def test_failing_hook_does_not_abort_start(self, settings, lifecycle, engine):
        write_app(settings.app_data_dir("web"), "web", hooks={"pre-start": "#!/bin/sh\nexit 1\n"})

        lifecycle.start("web")

        assert engine.actions() == ["up"]
        assert lifecycle.state_of("web") == AppState.RUNNING

    def test_restart(self, settings, lifecycle, engine):
        write_app(settings.app_data_dir("web"), "web")
        lifecycle.restart("web")
        assert engine.actions() == ["down", "up"]

    def test_start_passes_composed_environment(self, settings, lifecycle, engine):
        write_app(settings.app_data_dir("web"), "web", port=3000)
        lifecycle.start("web")
        env = engine.envs[-1]
        assert env["APP_ID"] == "web"
        assert env["APP_PORT"] == "3000"
        assert env["NETWORK_IP"] == "10.21.21.2"


class TestHiddenService:
    def test_no_wait_without_remote_access(self, settings, lifecycle, sleeps):
        write_app(settings.app_data_dir("web"), "web", proxy=True)
        lifecycle.start("web")
        assert sleeps == []

    def test_gives_up_after_configured_attempts(self, settings, lifecycle, engine, sleeps):
        settings.remote_access = True
        write_app(settings.app_data_dir("web"), "web", proxy=True)

        lifecycle.start("web")

        assert len(sleeps) == settings.hidden_service_attempts
        assert engine.envs[-1]["APP_HIDDEN_SERVICE"] == "notyetset.onion"

    def test_address_picked_up_once_available(self, settings, engine):
        settings.remote_access = True
        write_app(settings.app_data_dir("web"), "web", proxy=True)
        hostname_file = settings.hidden_service_file("web")

        def sleep(_interval):
            hostname_file.parent.mkdir(parents=True, exist_ok=True)
            hostname_file.write_text("abcdefgh.onion\n", encoding="utf-8")

        AppLifecycle(settings, engine=engine, sleep=sleep).start("web")

        assert engine.envs[-1]["APP_HIDDEN_SERVICE"] == "abcdefgh.onion"

    def test_apps_without_proxy_do_not_wait(self, settings, lifecycle, sleeps):
        settings.remote_access = True
        write_app(settings.app_data_dir("web"), "web", proxy=False)
        lifecycle.start("web")
        assert sleeps == []


class TestUninstall:
    def test_requires_installed(self, lifecycle):
        with pytest.raises(NotInstalledError):
            lifecycle.uninstall("web")

    def test_uninstall_removes_everything(self, settings, repo_dir, lifecycle, engine):
        write_app(repo_dir / "web", "web", hooks=ALL_HOOKS)
        lifecycle.install("web")
        (settings.root / "hooks.log").unlink()

        lifecycle.uninstall("web")

        assert ("down-all", "web") in engine.calls
        assert not settings.app_data_dir("web").exists()
        assert lifecycle.registry.list_installed() == []
        assert lifecycle.registry.origin_of("web") is None
        assert _hook_log(settings) == ["pre-uninstall", "post-uninstall"]
        assert lifecycle.state_of("web") == AppState.NOT_INSTALLED

    def test_rerun_after_data_removed_converges(self, settings, repo_dir, lifecycle, engine):
        write_app(repo_dir / "web", "web")
        lifecycle.install("web")
        engine.calls.clear()
        # Earlier run died between deleting the data and updating the registry
        shutil.rmtree(settings.app_data_dir("web"))

        lifecycle.uninstall("web")

        assert engine.calls == []
        assert lifecycle.registry.list_installed() == []
        assert lifecycle.registry.origin_of("web") is None

    def test_reinstall_keeps_origin(self, settings, repo_dir, lifecycle):
        write_app(repo_dir / "web", "web", version="1.0.0")
        write_app(settings.repos_dir / "community" / "web", "web", version="2.0.0")
        lifecycle.install("web", repo="community")

        lifecycle.reinstall("web")

        assert lifecycle.registry.origin_of("web") == "community"
        assert 'version = "2.0.0"' in (settings.app_data_dir("web") / "app.toml").read_text(encoding="utf-8")


class TestUpdate:
    @pytest.fixture
    def installed(self, settings, repo_dir, lifecycle, engine):
        write_app(repo_dir / "web", "web", version="1.0.0", hooks=ALL_HOOKS)
        lifecycle.install("web")
        (settings.root / "hooks.log").unlink()
        engine.calls.clear()
        write_app(repo_dir / "web", "web", version="2.0.0", hooks=ALL_HOOKS)
        return settings.app_data_dir("web")

    def test_requires_installed(self, lifecycle):
        with pytest.raises(NotInstalledError):
            lifecycle.update("web")

    def test_update_sequence(self, settings, installed, lifecycle, engine):
        engine.image_sets = [{"example/web:1.0.0", "redis:7"}, {"example/web:2.0.0", "redis:7"}]

        lifecycle.update("web")

        assert engine.actions() == ["images", "down", "pull", "up", "images"]
        assert 'version = "2.0.0"' in (installed / "app.toml").read_text(encoding="utf-8")
        assert "example/web:2.0.0" in (installed / "docker-compose.yml").read_text(encoding="utf-8")
        assert not (installed / UPDATE_PENDING_MARKER).exists()
        assert engine.removed == {"example/web:1.0.0"}
        assert _hook_log(settings) == ["pre-update", "pre-stop", "post-stop", "pre-start", "post-start", "post-update"]
        assert lifecycle.state_of("web") == AppState.RUNNING

    def test_manifest_copied_after_containers_start(self, installed, lifecycle, engine):
        lifecycle.update("web")
        up_index = engine.actions().index("up")
        # Containers were started while the old manifest was still in place
        assert engine.envs[up_index]["APP_VERSION"] == "1.0.0"
        assert engine.envs[-1]["APP_VERSION"] == "2.0.0"

    def test_manifest_copied_even_when_start_fails(self, installed, lifecycle, engine):
        engine.fail_on.add("up")

        with pytest.raises(ExternalCommandError):
            lifecycle.update("web")

        assert 'version = "2.0.0"' in (installed / "app.toml").read_text(encoding="utf-8")
        assert not (installed / UPDATE_PENDING_MARKER).exists()

    def test_skip_stop_and_start(self, installed, lifecycle, engine):
        lifecycle.update("web", skip_stop=True, skip_start=True)

        assert engine.actions() == []
        assert 'version = "2.0.0"' in (installed / "app.toml").read_text(encoding="utf-8")
        assert lifecycle.state_of("web") == AppState.INSTALLED

    def test_skip_start_leaves_app_stopped(self, installed, lifecycle, engine):
        lifecycle.update("web", skip_start=True)
        assert engine.actions() == ["down"]
        assert lifecycle.state_of("web") == AppState.STOPPED

    def test_nested_templates_are_updated(self, settings, repo_dir, lifecycle):
        write_app(repo_dir / "web", "web", version="1.0.0", extra_files={"config/app.conf.j2": "v1 {{ APP_ID }}\n"})
        lifecycle.install("web")
        write_app(repo_dir / "web", "web", version="2.0.0", extra_files={"config/app.conf.j2": "v2 {{ APP_ID }}\n"})

        lifecycle.update("web")

        rendered = settings.app_data_dir("web") / "config" / "app.conf"
        assert rendered.read_text(encoding="utf-8") == "v2 web\n"

    def test_sigterm_during_start_still_completes_update(self, installed, lifecycle, engine):
        def terminated_up(app_id, env):
            engine.calls.append(("up", app_id))
            os.kill(os.getpid(), signal.SIGTERM)

        engine.up = terminated_up
        previous_handler = signal.getsignal(signal.SIGTERM)

        with pytest.raises(SystemExit) as exc_info:
            lifecycle.update("web")

        assert exc_info.value.code == 143
        assert ("up", "web") in engine.calls
        assert 'version = "2.0.0"' in (installed / "app.toml").read_text(encoding="utf-8")
        assert not (installed / UPDATE_PENDING_MARKER).exists()
        assert signal.getsignal(signal.SIGTERM) == previous_handler


class TestUpdateRecovery:
    def test_recover_completes_copy(self, settings, repo_dir):
        source = write_app(repo_dir / "web", "web", version="2.0.0")
        target = write_app(settings.app_data_dir("web"), "web", version="1.0.0")
        (target / UPDATE_PENDING_MARKER).write_text(f"{source}\n", encoding="utf-8")

        assert UpdateGuard.recover(target) is True
        assert 'version = "2.0.0"' in (target / "app.toml").read_text(encoding="utf-8")
        assert not (target / UPDATE_PENDING_MARKER).exists()

    def test_recover_without_marker(self, settings):
        target = write_app(settings.app_data_dir("web"), "web")
        assert UpdateGuard.recover(target) is False

    def test_recover_with_vanished_source(self, settings):
        target = write_app(settings.app_data_dir("web"), "web", version="1.0.0")
        (target / UPDATE_PENDING_MARKER).write_text(f"{settings.root / 'gone'}\n", encoding="utf-8")

        assert UpdateGuard.recover(target) is False
        assert not (target / UPDATE_PENDING_MARKER).exists()
        assert 'version = "1.0.0"' in (target / "app.toml").read_text(encoding="utf-8")

    def test_start_completes_interrupted_update(self, settings, repo_dir, lifecycle, engine):
        source = write_app(repo_dir / "web", "web", version="2.0.0")
        target = write_app(settings.app_data_dir("web"), "web", version="1.0.0")
        (target / UPDATE_PENDING_MARKER).write_text(f"{source}\n", encoding="utf-8")

        lifecycle.start("web")

        assert engine.envs[-1]["APP_VERSION"] == "2.0.0"

    def test_guard_completes_on_exception(self, settings, repo_dir):
        source = write_app(repo_dir / "web", "web", version="2.0.0")
        target = write_app(settings.app_data_dir("web"), "web", version="1.0.0")

        with pytest.raises(SystemExit):
            with UpdateGuard(source, target).armed():
                assert (target / UPDATE_PENDING_MARKER).exists()
                raise SystemExit(143)

        assert 'version = "2.0.0"' in (target / "app.toml").read_text(encoding="utf-8")


class TestQueries:
    def test_dependencies_from_source_and_data(self, settings, repo_dir, lifecycle):
        write_app(repo_dir / "bitcoin", "bitcoin")
        write_app(repo_dir / "electrs", "electrs", dependencies=["bitcoin"])
        write_app(settings.app_data_dir("mempool"), "mempool", dependencies=["electrs", "bitcoin"])

        assert lifecycle.ls_dependencies("mempool") == ["electrs", "bitcoin"]
        assert lifecycle.ls_transitive_dependencies("mempool") == ["bitcoin", "electrs"]

    def test_logs_and_compose_passthrough(self, settings, lifecycle, engine):
        write_app(settings.app_data_dir("web"), "web")
        lifecycle.logs("web", ["--tail", "10"])
        lifecycle.compose("web", ["ps"])
        assert engine.actions() == ["logs", "ps"]
