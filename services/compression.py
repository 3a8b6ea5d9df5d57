import gzip

from errors import UnsupportedCompression
from schemas.archive import Compression


def decompress(data: bytes, compression: Compression) -> bytes:
    """Inflate archive data according to its header compression tag."""
    if compression in (Compression.NONE, Compression.UNKNOWN):
        return data
    if compression == Compression.GZIP:
        return gzip.decompress(data)
    raise UnsupportedCompression(f"Compression method not supported: {compression.name}")
