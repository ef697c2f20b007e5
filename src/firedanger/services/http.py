"""HTTP download helper with retries and a progress bar."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

import requests
from tqdm import tqdm

from firedanger.config import settings
from firedanger.errors import TransientIngestionFailure

logger = logging.getLogger(__name__)


def download_file(
    url: str,
    dest: Path,
    retries: int | None = None,
    timeout: int | None = None,
    chunk_size: int = 1 << 16,
    backoff_base: float = 2.0,
    session: requests.Session | None = None,
) -> Path:
    """Stream *url* to *dest* with exponential backoff between attempts.

    The body is written to ``dest + '.part'`` and renamed on success, so a
    truncated transfer never appears under the final name.

    Raises:
        TransientIngestionFailure: every attempt failed.
    """
    retries = retries or settings.download_retries
    timeout = timeout or settings.download_timeout_s
    http = session or requests
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    part = dest.with_name(dest.name + ".part")

    last_error: Exception | None = None
    for attempt in range(1, retries + 1):
        try:
            with http.get(url, stream=True, timeout=timeout) as r:
                r.raise_for_status()
                total = int(r.headers.get("content-length", 0))
                with open(part, "wb") as f, tqdm(
                    total=total,
                    unit="B",
                    unit_scale=True,
                    desc=dest.name,
                    disable=total == 0 or not settings.debug,
                ) as pbar:
                    for chunk in r.iter_content(chunk_size=chunk_size):
                        f.write(chunk)
                        pbar.update(len(chunk))
            os.replace(part, dest)
            logger.debug("Downloaded %s", dest.name)
            return dest
        except (requests.RequestException, OSError) as exc:
            last_error = exc
            logger.warning("Attempt %d/%d failed for %s: %s", attempt, retries, url, exc)
            if part.exists():
                part.unlink()
            if attempt < retries:
                time.sleep(backoff_base**attempt)

    logger.error("Failed to download after %d attempts: %s", retries, url)
    raise TransientIngestionFailure(
        f"Download failed after {retries} attempts: {url}",
        {"url": url, "error": str(last_error)},
    )
