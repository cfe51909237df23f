from __future__ import annotations

import argparse
import dataclasses
import json
import sys

import requests

from gcw.config import ConfigStore, resolve_effective
from gcw.errors import ConfigError, EngineUnavailable, LockError
from gcw.events import log_event, setup_logging
from gcw.orchestrator import Orchestrator
from gcw.probe import run_probe
from gcw.settings import Settings, settings as env_settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {}
    for field in ("config_path", "work_dir", "lockfile", "log_file", "status_host", "status_port"):
        value = getattr(args, field, None)
        if value is not None:
            overrides[field] = value
    if args.debug:
        overrides["debug"] = True
    return dataclasses.replace(env_settings, **overrides)


def _cmd_run(s: Settings, once: bool) -> int:
    setup_logging(s.log_file, s.debug)
    store = ConfigStore(s.config_path, s.work_dir)
    orch = Orchestrator(store, settings=s)
    if not once:
        return orch.run()

    try:
        orch.setup()
    except (ConfigError, LockError, EngineUnavailable) as e:
        log_event("ERROR", f"Startup failed: {e}")
        orch.shutdown()
        return 1
    try:
        results = orch.run_once()
    finally:
        orch.shutdown()
    return 0 if all(results.values()) else 1


def _cmd_show_config(s: Settings) -> int:
    setup_logging(None, s.debug)
    store = ConfigStore(s.config_path, s.work_dir)
    try:
        config = store.load()
    except ConfigError as e:
        log_event("ERROR", str(e))
        return 1
    out = [
        dataclasses.asdict(resolve_effective(spec, config.global_settings, s.work_dir)) for spec in config.services
    ]
    _print(out)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Git Config Watcher: pull config repos and restart their containers")
    p.add_argument("--config", dest="config_path", help="Configuration document (JSON or YAML)")
    p.add_argument("--work-dir", dest="work_dir", help="Directory holding the checkouts")
    p.add_argument("--lockfile", help="Single-instance lockfile")
    p.add_argument("--log-file", dest="log_file", help="Append-only log file")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    p.add_argument("--api", default="http://localhost:8089", help="Status API base URL (services/events)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Start watching all configured services")
    s_run.add_argument("--once", action="store_true", help="Run a single cycle per service and exit")
    s_run.add_argument("--status-host", dest="status_host")
    s_run.add_argument("--status-port", dest="status_port", type=int, help="Serve the status API (0 disables)")

    sub.add_parser("check", help="Health probe; exit 0 when healthy")
    sub.add_parser("show-config", help="Print the effective per-service configuration")
    sub.add_parser("services", help="List services from a running watcher")

    s_ev = sub.add_parser("events", help="Show recent events from a running watcher")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--service")

    args = p.parse_args(argv)
    s = _settings_from_args(args)

    if args.cmd == "run":
        return _cmd_run(s, args.once)

    if args.cmd == "check":
        setup_logging(None, s.debug)
        return run_probe(s).exit_code

    if args.cmd == "show-config":
        return _cmd_show_config(s)

    base = args.api.rstrip("/")

    if args.cmd == "services":
        r = requests.get(f"{base}/services", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.service:
            params["service"] = args.service
        r = requests.get(f"{base}/events", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
