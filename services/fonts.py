"""
Composite font resolution for glyph range requests.

A request such as ``fonts/Noto Sans Bold,Noto Sans Regular/0-255.pbf`` names
families in priority order. Families after the first are fallbacks, not merges.
"""
import logging
from typing import List, Optional, Tuple

from services.storage import ObjectStore

logger = logging.getLogger(__name__)

GLYPH_CONTENT_TYPE = "application/x-protobuf"


def split_font_key(object_key: str) -> Optional[Tuple[List[str], str]]:
    """
    Split ``fonts/<families>/<range>`` into the family list and the glyph range.

    Example:
        >>> split_font_key("fonts/Noto%20Sans,Open%20Sans/0-255.pbf")
        (['Noto Sans', 'Open Sans'], '0-255.pbf')
    """
    parts = object_key.replace("%20", " ").split("/")
    if len(parts) != 3 or parts[0] != "fonts" or not parts[1] or not parts[2]:
        return None
    families = [family for family in parts[1].split(",") if family]
    if not families:
        return None
    return families, parts[2]


async def resolve_font(store: ObjectStore, object_key: str) -> Optional[bytes]:
    """
    Return the glyph range of the first listed family present in the bucket.

    Families are probed one after another so the winner is always the highest
    priority hit, not the fastest. Returns None if no family resolves.
    """
    request = split_font_key(object_key)
    if request is None:
        return None

    families, glyph_range = request
    for family in families:
        key = f"fonts/{family}/{glyph_range}"
        obj = await store.get(key)
        if obj is None or obj.body is None:
            logger.debug("[FONTS] %s missing, trying next family", key)
            continue
        return obj.body

    logger.info("[FONTS] no family of %s has %s", ",".join(families), glyph_range)
    return None
