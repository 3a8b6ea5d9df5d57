"""Gateway settings read from the environment (or a local .env file)."""

from typing import List, Optional

from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    """Runtime configuration for the tile gateway."""

    # Comma separated, "*" allows any origin
    allowed_origins: str = ""
    # Object key template for archives, "{name}" is replaced by the archive name
    pmtiles_path: Optional[str] = None
    # Hostname used in TileJSON tile URLs instead of the request host
    public_hostname: Optional[str] = None
    bucket: str = "tiles"
    metadata_db: str = "metadata.db"
    # .pbf requests against MVT archives; scheduled for removal in favor of .mvt
    allow_legacy_pbf: bool = True
    archive_cache_size: int = 25
    log_level: str = "INFO"

    class Config:
        """Model config."""
        env_file = ".env"
        extra = "ignore"

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


gateway_settings = GatewaySettings()
