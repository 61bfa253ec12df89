"""On-disk cache of author avatars, served as base64 for menu images."""

import base64
import logging
import re
from pathlib import Path

import requests

from prbar.cache import atomic_write_bytes

logger = logging.getLogger(__name__)

AVATAR_SIZE = 20


def sized_url(url: str, size: int) -> str:
    """Ask for a small image unless the URL already carries a size."""
    if "size=" in url or "s=" in url:
        return url
    delimiter = "&" if "?" in url else "?"
    return f"{url}{delimiter}s={size}"


class AvatarCache:
    """Download each login's avatar once and reuse it across runs."""

    def __init__(
        self,
        cache_dir: Path,
        session: requests.Session | None = None,
        timeout: int = 10,
        size: int = AVATAR_SIZE,
    ) -> None:
        self._cache_dir = cache_dir
        self._session = session or requests.Session()
        self._timeout = timeout
        self._size = size

    def path(self, login: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", login) or "unknown"
        return self._cache_dir / f"{safe}-{self._size}.png"

    def get_b64(self, login: str, url: str) -> str:
        """Return the avatar as base64, downloading it on first use.

        Returns:
            Base64 text, or an empty string when there is no image.
        """
        path = self.path(login)
        if not path.exists() or path.stat().st_size == 0:
            if not url:
                return ""
            try:
                response = self._session.get(sized_url(url, self._size), timeout=self._timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                logger.info("Cannot download avatar of %s: %s", login, e)
                return ""
            if not response.content:
                return ""
            try:
                atomic_write_bytes(path, response.content)
            except OSError as e:
                logger.warning("Cannot cache avatar of %s: %s", login, e)
                return base64.b64encode(response.content).decode("ascii")

        try:
            return base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError:
            return ""
