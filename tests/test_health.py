import threading
import time

import httpx
import pytest

from gcw.docker_ops import ContainerStatus
from gcw.errors import RemediationFailure
from gcw.health import HealthAndRemediationMonitor, Heartbeat, scan_logs

from conftest import FakeContainer

FORBIDDEN_LOG = "\n".join(
    [
        '10.0.0.1 - - "GET / HTTP/1.1" 200 612',
        *['10.0.0.2 - - "GET /private HTTP/1.1" 403 153' for _ in range(5)],
        '2024/01/01 [error] 7#7: *1 directory index of "/srv/www/" is forbidden',
    ]
)


@pytest.fixture
def monitor(engine, runner):
    return HealthAndRemediationMonitor(engine, runner=runner)


@pytest.fixture
def site(tmp_path):
    """A checkout whose nginx config points at an index-less document root."""
    checkout = tmp_path / "checkout"
    docroot = tmp_path / "docroot"
    checkout.mkdir()
    docroot.mkdir()
    (checkout / "site.conf").write_text(f"server {{\n    listen 80;\n    root {docroot};\n}}\n")
    return checkout, docroot


def test_scan_logs_counts_markers_case_insensitively():
    errors, forbidden = scan_logs(FORBIDDEN_LOG, ("error",), ("403", "forbidden"))
    assert len(errors) == 1
    # five 403 lines plus the "is forbidden" error line
    assert forbidden == 6


def test_forbidden_flood_triggers_full_remediation(monitor, docker_client, runner, make_cfg, site, retry):
    checkout, docroot = site
    cont = docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))
    cfg = make_cfg(local_path=str(checkout), auto_fix=True, validation_command="nginx -t")

    report = monitor.check(cfg, retry)

    assert report.container_status is ContainerStatus.RUNNING
    assert report.forbidden_count >= 5
    assert report.remediated is True
    # content remediation
    assert (docroot / "index.html").exists()
    assert report.content_fixes == [str(docroot / "index.html")]
    # permission remediation
    assert len(cont.exec_calls) == 1
    # exactly one validation call
    assert len(runner.matching("sh", "-c", "nginx -t")) == 1


def test_no_remediation_without_auto_fix(monitor, docker_client, runner, make_cfg, site, retry):
    checkout, docroot = site
    cont = docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))

    report = monitor.check(make_cfg(local_path=str(checkout), validation_command="nginx -t"), retry)

    assert report.forbidden_count == 6
    assert report.remediated is False
    assert not (docroot / "index.html").exists()
    assert cont.exec_calls == []
    assert runner.matching("sh", "-c") == []
    assert any("No index file" in w for w in report.warnings)


def test_below_threshold_does_nothing(monitor, docker_client, make_cfg, site, retry):
    checkout, docroot = site
    cont = docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))
    cfg = make_cfg({"forbidden_threshold": 10}, local_path=str(checkout), auto_fix=True)

    report = monitor.check(cfg, retry)

    assert report.remediated is False
    assert cont.exec_calls == []


def test_permission_fix_skipped_when_disabled(monitor, docker_client, make_cfg, site, retry):
    checkout, docroot = site
    cont = docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))
    cfg = make_cfg(local_path=str(checkout), auto_fix=True, permissions={"fix": False})

    report = monitor.check(cfg, retry)

    assert report.remediated is True
    assert (docroot / "index.html").exists()
    assert cont.exec_calls == []


def test_validation_still_failing_raises(monitor, docker_client, runner, make_cfg, site, retry):
    checkout, _ = site
    docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))
    runner.set(("sh", "-c"), 1, stderr="still broken")
    cfg = make_cfg(local_path=str(checkout), auto_fix=True, validation_command="nginx -t")

    with pytest.raises(RemediationFailure, match="still broken"):
        monitor.check(cfg, retry)


def test_stopped_container_logs_are_not_read(monitor, docker_client, make_cfg, retry):
    docker_client.containers.add(FakeContainer("web-nginx", status="exited", logs=FORBIDDEN_LOG))
    report = monitor.check(make_cfg(auto_fix=True), retry)
    assert report.container_status is ContainerStatus.STOPPED
    assert report.forbidden_count == 0


def test_missing_container_is_reported(monitor, make_cfg, retry):
    report = monitor.check(make_cfg(), retry)
    assert report.container_status is ContainerStatus.MISSING


def test_monitoring_disabled(monitor, make_cfg, retry):
    report = monitor.check(make_cfg(monitor_logs=False), retry)
    assert report.container_status is None


def test_tail_limits_inspected_lines(monitor, docker_client, make_cfg, retry):
    docker_client.containers.add(FakeContainer("web-nginx", logs=FORBIDDEN_LOG))
    report = monitor.check(make_cfg(log_tail_lines=2), retry)
    assert report.forbidden_count == 2


# -- heartbeat ------------------------------------------------------------


class Recorder:
    def __init__(self, status_code=200, fail=False):
        self.requests: list[httpx.Request] = []
        self.status_code = status_code
        self.fail = fail

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(self.status_code)


def test_heartbeat_success_and_failure_endpoints():
    rec = Recorder()
    hb = Heartbeat(transport=httpx.MockTransport(rec))

    assert hb.success("https://hc.example.com/ping/abc", "Monitoring started") is True
    assert hb.failure("https://hc.example.com/ping/abc/", "boom") is True

    assert [r.method for r in rec.requests] == ["POST", "POST"]
    assert str(rec.requests[0].url) == "https://hc.example.com/ping/abc"
    assert rec.requests[0].content == b"Monitoring started"
    assert str(rec.requests[1].url) == "https://hc.example.com/ping/abc/fail"
    assert rec.requests[1].content == b"Error: boom"


def test_heartbeat_never_raises():
    rec = Recorder(fail=True)
    hb = Heartbeat(attempts=2, transport=httpx.MockTransport(rec))

    assert hb.success("https://hc.example.com/ping/abc") is False
    assert len(rec.requests) == 2


def test_heartbeat_server_errors_are_retried_client_errors_are_not():
    server = Recorder(status_code=503)
    assert Heartbeat(attempts=3, transport=httpx.MockTransport(server)).success("https://hc.example.com/x") is False
    assert len(server.requests) == 3

    client = Recorder(status_code=404)
    assert Heartbeat(attempts=3, transport=httpx.MockTransport(client)).success("https://hc.example.com/x") is False
    assert len(client.requests) == 1


def test_heartbeat_without_url_is_a_noop():
    rec = Recorder()
    hb = Heartbeat(transport=httpx.MockTransport(rec))
    assert hb.success(None) is False
    assert hb.failure("", "x") is False
    assert rec.requests == []


def test_heartbeat_retry_delay_is_cut_short_by_shutdown():
    rec = Recorder(status_code=503)
    stop = threading.Event()
    stop.set()
    hb = Heartbeat(attempts=3, delay_s=30, transport=httpx.MockTransport(rec), stop_event=stop)

    started = time.monotonic()
    assert hb.failure("https://hc.example.com/x", "boom") is False
    assert time.monotonic() - started < 5
    assert len(rec.requests) == 1


def test_heartbeat_per_call_stop_event_wins():
    rec = Recorder(status_code=503)
    cycle_stop = threading.Event()
    cycle_stop.set()
    hb = Heartbeat(attempts=3, delay_s=30, transport=httpx.MockTransport(rec))

    assert hb.success("https://hc.example.com/x", stop_event=cycle_stop) is False
    assert len(rec.requests) == 1
