"""
Archive listing backed by the tabular metadata store.

The store is a SQLite database with one ``pmtiles_data`` row per archive.
"""
import json
import logging
import sqlite3
from typing import Any, Dict, List

from starlette.concurrency import run_in_threadpool

from errors import MalformedListingRecord
from schemas.listing import ArchiveListingRecord

logger = logging.getLogger(__name__)

LISTING_QUERY = "SELECT * FROM pmtiles_data ORDER BY worldName"


class MetadataStore:
    """Read-only query access to the metadata database."""

    def __init__(self, path: str):
        self.path = path

    async def query(self, sql: str) -> List[Dict[str, Any]]:
        return await run_in_threadpool(self._query, sql)

    def _query(self, sql: str) -> List[Dict[str, Any]]:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute(sql).fetchall()]
        finally:
            conn.close()


async def list_archives(store: MetadataStore) -> Dict[str, Dict[str, Any]]:
    """
    All known archives keyed by world name.

    The JSON columns are decoded. A row with malformed JSON fails the whole
    listing rather than producing a partial one.
    """
    rows = await store.query(LISTING_QUERY)

    results: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        world_name = row["worldName"]
        try:
            record = ArchiveListingRecord(
                world_name=world_name,
                display_name=row["displayName"],
                map_json=json.loads(row["mapJson"]),
                layer_keys=json.loads(row["layerKeys"]),
                last_updated=row.get("lastUpdated"),
            )
        except (TypeError, json.JSONDecodeError) as e:
            raise MalformedListingRecord(f"Malformed listing record for {world_name}: {e}") from e
        results[world_name] = record.model_dump(by_alias=True)

    logger.debug("[LIST] %d archives", len(results))
    return results
