"""Content and permission fixes for web-serving containers.

Content remediation works on the host checkout: every ``root <dir>;``
directive in a ``*.conf`` file names a document root that should serve an
index page. Permission remediation runs inside the container as root.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path

from .config import EffectiveConfig
from .docker_ops import ContainerStatus, DockerEngine
from .errors import RemediationFailure
from .events import log_event

DEFAULT_INDEX_HTML = (
    "<!DOCTYPE html><html><head><title>Welcome</title></head>"
    "<body><h1>Welcome</h1><p>Site under construction</p></body></html>\n"
)

ROOT_DIRECTIVE_RE = re.compile(r"(?:^|[\s{;])root\s+([^;{}]+);", re.MULTILINE)
DENY_ALL_RE = re.compile(r"(?:^|[\s{;])deny\s+all\s*;", re.MULTILINE)
GLOB_CHARS_RE = re.compile(r"([*?])")


def find_conf_files(checkout: Path) -> list[Path]:
    if not checkout.is_dir():
        return []
    return sorted(p for p in checkout.rglob("*.conf") if p.is_file() and ".git" not in p.parts)


def _read(p: Path) -> str:
    try:
        return p.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        log_event("WARNING", f"Cannot read {p}: {e}")
        return ""


def document_roots(checkout: Path) -> list[Path]:
    """Literal ``root`` directives found in the checkout, variables skipped.

    Relative roots are taken relative to the checkout.
    """
    roots: list[Path] = []
    for conf in find_conf_files(checkout):
        for m in ROOT_DIRECTIVE_RE.finditer(_read(conf)):
            raw = m.group(1).strip().strip("\"'")
            if not raw or "$" in raw:
                continue
            p = Path(raw)
            if not p.is_absolute():
                p = checkout / p
            if p not in roots:
                roots.append(p)
    return roots


def has_index(directory: Path) -> bool:
    return any(child.name.startswith("index.") for child in directory.iterdir())


def fix_content(cfg: EffectiveConfig) -> list[Path]:
    """Write a default index.html into each existing document root lacking one."""
    created: list[Path] = []
    for root in document_roots(cfg.local_path):
        if not root.is_dir() or has_index(root):
            continue
        target = root / "index.html"
        try:
            target.write_text(DEFAULT_INDEX_HTML, encoding="utf-8")
        except OSError as e:
            raise RemediationFailure(f"Cannot write {target}: {e}") from e
        log_event("INFO", f"Created default index.html in {root}", service_name=cfg.name)
        created.append(target)
    return created


def inspect_content(cfg: EffectiveConfig) -> list[str]:
    """Read-only scan reporting likely causes of 403 responses."""
    warnings: list[str] = []
    for conf in find_conf_files(cfg.local_path):
        if DENY_ALL_RE.search(_read(conf)):
            warnings.append(f"'deny all' directive in {conf}")
    for root in document_roots(cfg.local_path):
        if root.is_dir() and not has_index(root):
            warnings.append(f"No index file in document root {root}")
    for w in warnings:
        log_event("WARNING", w, service_name=cfg.name)
    return warnings


def shell_glob(pattern: str) -> str:
    """Quote a path pattern for sh, leaving only ``*`` and ``?`` in the file name unquoted."""
    directory, sep, name = pattern.rpartition("/")
    head = f"{shlex.quote(directory)}{sep}" if directory else sep
    parts = [p if p in ("*", "?") else shlex.quote(p) for p in GLOB_CHARS_RE.split(name) if p]
    return head + "".join(parts)


def permission_script(content_root: str, user: str, group: str, config_files: tuple[str, ...] | list[str]) -> str:
    root = shlex.quote(content_root)
    owner = shlex.quote(f"{user}:{group}")
    index = shlex.quote(DEFAULT_INDEX_HTML)
    lines = [
        "set -e",
        f"if [ ! -d {root} ]; then echo 'content root {content_root} does not exist' >&2; exit 1; fi",
        f"chown -R {owner} {root}",
        f"find {root} -type d -exec chmod 755 {{}} +",
        f"find {root} -type f -exec chmod 644 {{}} +",
        f"find {root} -type d | while IFS= read -r d; do",
        '  if ! ls "$d" | grep -q "^index\\."; then',
        f'    printf %s {index} > "$d/index.html"',
        f'    chown {owner} "$d/index.html"',
        '    chmod 644 "$d/index.html"',
        '    echo "created $d/index.html"',
        "  fi",
        "done",
    ]
    # Unmatched globs stay literal and fail the -f test.
    for pattern in config_files:
        lines.append(f'for f in {shell_glob(pattern)}; do [ -f "$f" ] && chmod 644 "$f"; done; true')
    return "\n".join(lines)


def fix_permissions(engine: DockerEngine, cfg: EffectiveConfig) -> str:
    """Apply ownership/mode fixes inside the running container. Returns command output."""
    if engine.status(cfg.container_name) is not ContainerStatus.RUNNING:
        raise RemediationFailure(f"Cannot fix permissions: container {cfg.container_name} is not running")

    log_event("INFO", f"Fixing permissions on {cfg.content_root}", service_name=cfg.name)
    script = permission_script(cfg.content_root, cfg.permission_user, cfg.permission_group, cfg.config_files)
    rc, output = engine.exec_root(cfg.container_name, ["sh", "-c", script])
    if rc != 0:
        raise RemediationFailure(f"Permission fix failed in {cfg.container_name} (exit={rc}): {output.strip()}")
    for line in output.splitlines():
        if line.startswith("created "):
            log_event("INFO", f"Created default index.html: {line[len('created '):]}", service_name=cfg.name)
    return output
