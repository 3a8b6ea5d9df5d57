from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ArchiveListingRecord(BaseModel):
    """
    One archive as listed by /list. Serialized with the metadata table's column names.
    """
    model_config = ConfigDict(populate_by_name=True)

    world_name: str = Field(..., alias="worldName", description="Unique archive key")
    display_name: str = Field(..., alias="displayName")
    map_json: Any = Field(..., alias="mapJson", description="Decoded map descriptor")
    layer_keys: Any = Field(..., alias="layerKeys", description="Decoded layer keys")
    last_updated: Any = Field(None, alias="lastUpdated", description="Timestamp as stored")
