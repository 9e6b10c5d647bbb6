import logging
import re
from pathlib import Path

log = logging.getLogger("questbot.proxies")

PROXY_TEMPLATE = """# Add your proxies here (one per line)
# Supported formats:
# - ip:port (example: 123.45.67.89:8080)
# - ip:port:username:password (example: 123.45.67.89:8080:user:pass)
# - username:password:ip:port (IPRoyal format)
"""

_IP_LIKE = re.compile(r"\d+\.\d+")


def detect_proxy_format(line: str | None) -> str:
    if not line:
        return "unknown"
    parts = line.split(":")
    if len(parts) == 2:
        return "ip:port"
    if len(parts) == 4:
        # IPRoyal usernames look like "user-xxx" or contain underscores
        if "user-" in parts[0] or "_" in parts[0]:
            return "user:pass:ip:port"
        if _IP_LIKE.search(parts[0]):
            return "ip:port:user:pass"
        return "user:pass:ip:port"
    return "unknown"


def proxy_url(line: str | None) -> str | None:
    fmt = detect_proxy_format(line)
    if fmt == "unknown":
        if line:
            log.warning("Unrecognized proxy format: %s", line)
        return None
    parts = line.split(":")
    match fmt:
        case "ip:port":
            return f"http://{parts[0]}:{parts[1]}"
        case "ip:port:user:pass":
            return f"http://{parts[2]}:{parts[3]}@{parts[0]}:{parts[1]}"
        case _:
            return f"http://{parts[0]}:{parts[1]}@{parts[2]}:{parts[3]}"


def load_proxies(path: str | Path = "proxy.txt") -> list[str]:
    path = Path(path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(PROXY_TEMPLATE, encoding="utf-8")
        log.info("No proxy file, wrote a template to %s", path)
        return []
    lines = [ln.strip() for ln in path.read_text(encoding="utf-8").splitlines()]
    proxies = [ln for ln in lines if ln and not ln.startswith("#")]
    log.info("Loaded %d proxies from %s", len(proxies), path)
    return proxies


class ProxyPool:
    """Round-robin over proxy URLs; lines in an unknown format are dropped."""

    def __init__(self, lines: list[str] | None = None) -> None:
        self._urls = [u for u in (proxy_url(ln) for ln in lines or []) if u]
        self._next = 0

    def __len__(self) -> int:
        return len(self._urls)

    def next(self) -> str | None:
        if not self._urls:
            return None
        url = self._urls[self._next]
        self._next = (self._next + 1) % len(self._urls)
        return url
