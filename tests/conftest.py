from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest
from docker.errors import DockerException, NotFound

from gcw.commands import CommandResult
from gcw.config import GlobalSettings, ServiceSpec, resolve_effective
from gcw.docker_ops import DockerEngine
from gcw.events import journal, logger
from gcw.retry import RetryPolicy

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")

GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "Test Author",
    "GIT_AUTHOR_EMAIL": "author@example.com",
    "GIT_COMMITTER_NAME": "Test Author",
    "GIT_COMMITTER_EMAIL": "author@example.com",
}


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path_factory, monkeypatch):
    """Isolate git config, the event journal and log handlers per test."""
    gitconfig = tmp_path_factory.mktemp("gitcfg") / "gitconfig"
    gitconfig.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for k, v in GIT_IDENTITY.items():
        monkeypatch.setenv(k, v)
    journal.clear()
    yield
    journal.clear()
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


# -- git helpers ----------------------------------------------------------


def git(cwd: Path, *args: str) -> str:
    res = subprocess.run(
        ["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True, env=dict(os.environ)
    )
    return res.stdout.strip()


class Upstream:
    """A bare ``origin`` plus a working clone used to push new commits to it."""

    def __init__(self, root: Path):
        self.origin = root / "origin.git"
        self.work = root / "upstream"
        self.work.mkdir(parents=True)
        git(self.work, "init")
        git(self.work, "symbolic-ref", "HEAD", "refs/heads/main")
        self.commit("nginx.conf", "server { root /srv/www; }\n", "initial")
        git(root, "init", "--bare", str(self.origin))
        git(self.origin, "symbolic-ref", "HEAD", "refs/heads/main")
        git(self.work, "remote", "add", "origin", str(self.origin))
        git(self.work, "push", "origin", "main")

    @property
    def url(self) -> str:
        return str(self.origin)

    def commit(self, path: str, content: str, message: str, push: bool = False, branch: str = "main") -> str:
        target = self.work / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        git(self.work, "add", path)
        git(self.work, "commit", "-m", message)
        if push:
            git(self.work, "push", "origin", branch)
        return self.head()

    def head(self) -> str:
        return git(self.work, "rev-parse", "HEAD")


@pytest.fixture
def upstream(tmp_path) -> Upstream:
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    return Upstream(tmp_path / "remote")


# -- docker fakes ---------------------------------------------------------


class FakeContainer:
    def __init__(self, name: str, status: str = "running", logs: str = "", exec_exit_code: int = 0):
        self.name = name
        self.status = status
        self.log_text = logs
        self.exec_exit_code = exec_exit_code
        self.restarts = 0
        self.starts = 0
        self.exec_calls: list[tuple[list[str], str | None]] = []

    def reload(self) -> None:
        pass

    def restart(self, timeout: int = 10) -> None:
        self.restarts += 1
        self.status = "running"

    def start(self) -> None:
        self.starts += 1
        self.status = "running"

    def logs(self, stdout: bool = True, stderr: bool = True, tail: int | str = "all") -> bytes:
        lines = self.log_text.splitlines()
        if isinstance(tail, int):
            lines = lines[-tail:]
        return ("\n".join(lines) + "\n").encode()

    def exec_run(self, cmd, user: str | None = None):
        self.exec_calls.append((cmd, user))
        return self.exec_exit_code, b""


class FakeContainers:
    def __init__(self) -> None:
        self.by_name: dict[str, FakeContainer] = {}

    def add(self, container: FakeContainer) -> FakeContainer:
        self.by_name[container.name] = container
        return container

    def get(self, name: str) -> FakeContainer:
        try:
            return self.by_name[name]
        except KeyError:
            raise NotFound(f"No such container: {name}") from None


class FakeDockerClient:
    def __init__(self, reachable: bool = True):
        self.containers = FakeContainers()
        self.reachable = reachable

    def ping(self) -> bool:
        if not self.reachable:
            raise DockerException("Error while fetching server API version")
        return True


class FakeRunner:
    """Records argv lists and answers from prefix rules (longest prefix wins)."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.rules: dict[tuple[str, ...], tuple[int, str, str]] = {}

    def set(self, prefix: tuple[str, ...], returncode: int, stdout: str = "", stderr: str = "") -> None:
        self.rules[tuple(prefix)] = (returncode, stdout, stderr)

    def __call__(self, args, cwd=None, timeout_s: float = 60.0, env=None) -> CommandResult:
        argv = [str(a) for a in args]
        self.calls.append(argv)
        best: tuple[str, ...] | None = None
        for prefix in self.rules:
            if tuple(argv[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        rc, out, err = self.rules[best] if best is not None else (0, "", "")
        return CommandResult(tuple(argv), rc, out, err)

    def matching(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def runner() -> FakeRunner:
    r = FakeRunner()
    # No compose on the fake host unless a test says otherwise.
    r.set(("docker", "compose", "version"), 1, stderr="unknown command")
    r.set(("docker-compose", "--version"), 127, stderr="docker-compose: command not found")
    return r


@pytest.fixture
def engine(docker_client, runner) -> DockerEngine:
    return DockerEngine(client=docker_client, runner=runner)


@pytest.fixture
def retry() -> RetryPolicy:
    return RetryPolicy(attempts=2, delay_s=0)


@pytest.fixture
def make_cfg(tmp_path):
    """Build an EffectiveConfig from ServiceSpec/GlobalSettings keyword overrides."""

    def _make(global_settings: dict | None = None, **service):
        data = {"name": "web", "container_name": "web-nginx", "repo_url": "file:///dev/null"}
        data.update(service)
        glob = GlobalSettings(**{"retry_delay": 0, **(global_settings or {})})
        return resolve_effective(ServiceSpec(**data), glob, tmp_path / "work")

    return _make
