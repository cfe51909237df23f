"""Git Config Watcher (GCW).

Long-running watcher that keeps containerized services in step with their
configuration repositories:
 - detects upstream commits and reconciles a local checkout (with rollback)
 - restarts / rebuilds the matching container (compose or direct docker)
 - tails container logs and applies heuristic auto-remediation
 - pings an external heartbeat endpoint every cycle

One watch thread runs per configured service; see ``gcw.orchestrator``.
"""
