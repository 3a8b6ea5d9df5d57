"""Edge cache settings.

The Cache-Control value is stamped on every stored response regardless of what
the object store returned, and its max-age is the TTL the edge cache applies.
"""

import re
from typing import Optional

from pydantic_settings import BaseSettings

MAX_AGE_RE = re.compile(r"max-age=(\d+)")


class CacheSettings(BaseSettings):
    """Settings for the shared edge cache."""

    control: str = "public, max-age=86400"  # 24 hours
    namespace: str = "tile-gateway"

    class Config:
        """Model config."""
        env_file = ".env"
        env_prefix = "CACHE_"
        extra = "ignore"  # Ignore extra environment variables

    @property
    def ttl(self) -> Optional[int]:
        """Seconds to keep an entry, taken from the max-age directive."""
        match = MAX_AGE_RE.search(self.control)
        if match:
            return int(match.group(1))
        return None

    @property
    def storable(self) -> bool:
        directives = self.control.lower()
        return "no-store" not in directives and self.ttl != 0


cache_setting = CacheSettings()
