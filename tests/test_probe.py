import json
import os

import pytest

from gcw.docker_ops import DockerEngine
from gcw.probe import lock_status, run_probe, tail_errors, watcher_pids
from gcw.settings import Settings

from conftest import FakeContainer, FakeDockerClient

DEAD_PID = 999_999_999


def _which(cmd):
    return f"/usr/bin/{cmd}"


@pytest.fixture
def env(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    lock = tmp_path / "watcher.lock"
    lock.write_text(f"{os.getpid()}\n")
    s = Settings(
        config_path=str(tmp_path / "services.json"),
        work_dir=str(work),
        lockfile=str(lock),
        log_file=str(tmp_path / "watcher.log"),
    )
    return s


def _write_config(s, *services, **glob):
    with open(s.config_path, "w") as fh:
        json.dump({"services": list(services), "global_settings": glob}, fh)


def _engine(*containers, reachable=True):
    client = FakeDockerClient(reachable=reachable)
    for c in containers:
        client.containers.add(c)
    return DockerEngine(client=client)


WEB = {"name": "web", "container_name": "web-nginx", "repo_url": "https://example.com/web.git"}


def _probe(s, **kw):
    kw.setdefault("which", _which)
    kw.setdefault("uptime", lambda: 500.0)
    kw.setdefault("processes", lambda: [os.getppid()])
    return run_probe(s, **kw)


def test_lock_status_live_pid(tmp_path):
    p = tmp_path / "lock"
    p.write_text(f"{os.getpid()}\n")
    assert lock_status(p, 30, 1000.0).ok


def test_lock_status_stale_pid(tmp_path):
    p = tmp_path / "lock"
    p.write_text(f"{DEAD_PID}\n")
    st = lock_status(p, 30, 1000.0)
    assert not st.ok
    assert "Stale" in st.message


def test_lock_status_garbage(tmp_path):
    p = tmp_path / "lock"
    p.write_text("not a pid\n")
    assert not lock_status(p, 30, 1000.0).ok


def test_lock_status_grace_period(tmp_path):
    p = tmp_path / "missing.lock"
    assert lock_status(p, 30, 10.0).ok
    assert not lock_status(p, 30, 31.0).ok
    unknown = lock_status(p, 30, None)
    assert unknown.ok and unknown.warning


def test_tail_errors_only_scans_recent_lines(tmp_path):
    log = tmp_path / "watcher.log"
    lines = ["[2024-01-01 00:00:00] [ERROR] old failure"]
    lines += [f"[2024-01-01 00:00:01] [INFO] line {i}" for i in range(100)]
    lines += ["[2024-01-01 00:00:02] [ERROR] [web] recent failure"]
    log.write_text("\n".join(lines) + "\n")

    errors = tail_errors(log)
    assert errors == ["[2024-01-01 00:00:02] [ERROR] [web] recent failure"]
    assert tail_errors(tmp_path / "absent.log") == []


def test_healthy_with_warnings(env):
    _write_config(env, WEB)
    report = _probe(env, engine=_engine(FakeContainer("web-nginx")))

    assert report.exit_code == 0
    assert report.critical == []
    # the checkout has not been cloned yet
    assert any("checkout does not exist" in w for w in report.warnings)


def test_container_warnings_are_not_critical(env):
    _write_config(env, WEB, {**WEB, "name": "api", "container_name": "api"})
    engine = _engine(FakeContainer("web-nginx", status="exited"))

    report = _probe(env, engine=engine)

    assert report.healthy
    assert any("exists but is not running" in w for w in report.warnings)
    assert any("'api' does not exist" in w for w in report.warnings)


def test_missing_command_is_critical(env):
    _write_config(env, WEB)
    report = _probe(
        env,
        engine=_engine(FakeContainer("web-nginx")),
        which=lambda cmd: None if cmd == "git" else _which(cmd),
        uptime=lambda: 500.0,
    )
    assert report.exit_code == 1
    assert report.critical == ["Required command 'git' not available"]


def test_invalid_config_is_critical(env):
    with open(env.config_path, "w") as fh:
        fh.write("{not json")
    report = _probe(env, engine=_engine())
    assert report.exit_code == 1


def test_empty_services_is_only_a_warning(env):
    _write_config(env)
    report = _probe(env, engine=_engine(reachable=False))
    assert report.exit_code == 0
    assert "No services defined in configuration" in report.warnings


def test_unreachable_engine_is_critical(env):
    _write_config(env, WEB)
    report = _probe(env, engine=_engine(reachable=False))
    assert report.exit_code == 1
    assert any("Docker engine" in c for c in report.critical)


def test_engine_ignored_when_restarts_disabled(env):
    _write_config(env, WEB, disable_restart=True)
    report = _probe(env, engine=_engine(reachable=False))
    assert report.exit_code == 0


def test_missing_lockfile_after_grace_is_critical(env):
    os.remove(env.lockfile)
    _write_config(env, WEB, disable_restart=True, startup_grace_period=60)

    assert _probe(env, uptime=lambda: 30.0).exit_code == 0
    assert _probe(env, uptime=lambda: 90.0).exit_code == 1


def test_missing_work_dir_is_critical(env):
    _write_config(env, WEB, disable_restart=True)
    os.rmdir(env.work_dir)
    report = _probe(env)
    assert any("does not exist" in c for c in report.critical)


def test_recent_log_errors_are_warnings(env):
    _write_config(env, WEB, disable_restart=True)
    with open(env.log_file, "w") as fh:
        fh.write("[2024-01-01 00:00:00] [ERROR] [web] Cycle failed\n")
    report = _probe(env)
    assert report.exit_code == 0
    assert any("recent error" in w for w in report.warnings)


def test_missing_watcher_process_is_critical_even_within_grace(env):
    os.remove(env.lockfile)
    _write_config(env, WEB, disable_restart=True)

    report = _probe(env, uptime=lambda: 5.0, processes=lambda: [])

    assert report.exit_code == 1
    assert "Watcher process is not running" in report.critical


def test_watcher_pids_skips_the_current_process():
    assert os.getpid() not in watcher_pids()
