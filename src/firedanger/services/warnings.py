"""Warning flag files: presence of the file means the warning is active."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

FORECAST_WARNING_NAME = "FORECAST_UNAVAILABLE_WARNING.txt"
GRIDMET_WARNING_NAME = "GRIDMET_STALE_WARNING.txt"

_FIRST_SEEN = re.compile(r"^First seen: (\S+)$", re.MULTILINE)


def warning_active(path: str | Path) -> bool:
    return Path(path).exists()


def first_seen(path: str | Path) -> str | None:
    """Date the warning was first raised, if it is active."""
    path = Path(path)
    if not path.exists():
        return None
    match = _FIRST_SEEN.search(path.read_text())
    return match.group(1) if match else None


def write_warning(path: str | Path, title: str, lines: list[str] | None = None) -> Path:
    """(Re)write a warning file, keeping the original first-seen date."""
    path = Path(path)
    now = datetime.now(timezone.utc)
    since = first_seen(path) or now.date().isoformat()

    body = [
        title,
        "",
        f"First seen: {since}",
        f"Updated: {now.strftime('%Y-%m-%d %H:%M:%S UTC')}",
    ]
    if lines:
        body.append("")
        body.extend(lines)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(body) + "\n")
    logger.warning("%s (%s)", title, path)
    return path


def clear_warning(path: str | Path) -> bool:
    """Remove a warning file. Returns True if one was active."""
    path = Path(path)
    if not path.exists():
        return False
    path.unlink()
    logger.info("Cleared warning %s", path)
    return True
