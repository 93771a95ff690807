"""
Catalog writers - format-specific serializers for finished target output.

Each writer turns one target's ordered channel sequence into its consumer
format: a flat m3u playlist, xtream player_api JSON documents, or a tree of
per-entry .strm files.
"""

from config import OutputKind, TargetOptions
from writers.common import CatalogWriter, WriterResult
from writers.m3u import M3UWriter
from writers.strm import StrmWriter
from writers.xtream import XtreamWriter

WRITERS = {
    OutputKind.M3U: M3UWriter,
    OutputKind.XTREAM: XtreamWriter,
    OutputKind.STRM: StrmWriter,
}


def get_writer(kind: OutputKind | str, options: TargetOptions | None = None) -> CatalogWriter:
    """Instantiate the writer for an output kind."""
    return WRITERS[OutputKind(kind)](options)


__all__ = ["CatalogWriter", "WriterResult", "M3UWriter", "XtreamWriter", "StrmWriter", "get_writer"]
