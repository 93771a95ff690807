"""
Xtream catalog writer.

Writes the player_api documents a consumer needs to browse the target as an
xtream provider: one categories file and one stream list per cluster (live,
vod, series). Category ids are assigned per cluster in first-seen group
order, so the pipeline's ordering carries through to the category list.
All documents are staged together and the directory is swapped into place
in one step.
"""
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from channel import Channel, ChannelKind
from writers.common import (
    CatalogWriter,
    WriterResult,
    create_staging_dir,
    discard_staging,
    publish_directory,
)

logger = logging.getLogger(__name__)

# cluster -> (categories file, streams file, stream_type)
CLUSTERS = {
    "live": ("live_categories.json", "live_streams.json", "live"),
    "vod": ("vod_categories.json", "vod_streams.json", "movie"),
    "series": ("series_categories.json", "series.json", "series"),
}


def cluster_for(kind: ChannelKind) -> str:
    if kind == ChannelKind.LIVE:
        return "live"
    if kind == ChannelKind.MOVIE:
        return "vod"
    return "series"


def _numeric_id(channel: Channel, fallback: int):
    try:
        return int(channel.channel_id)
    except ValueError:
        return fallback


class XtreamWriter(CatalogWriter):
    kind = "xtream"

    def default_destination(self, output_dir: Path, target_name: str, filename: Optional[str]) -> Path:
        return Path(output_dir) / (filename or target_name)

    def _skip_direct_source(self, cluster: str) -> bool:
        if cluster == "live":
            return self.options.xtream_skip_live_direct_source
        if cluster == "vod":
            return self.options.xtream_skip_video_direct_source
        return self.options.xtream_skip_series_direct_source

    def build_documents(self, channels: Sequence[Channel]) -> dict[str, list]:
        """Build every document keyed by file name."""
        categories: dict[str, dict[str, int]] = {cluster: {} for cluster in CLUSTERS}
        streams: dict[str, list] = {cluster: [] for cluster in CLUSTERS}
        next_category_id = 1

        for channel in channels:
            cluster = cluster_for(channel.kind)
            cluster_categories = categories[cluster]
            if channel.group not in cluster_categories:
                cluster_categories[channel.group] = next_category_id
                next_category_id += 1

            entries = streams[cluster]
            entry = dict(channel.extra)
            entry.update({
                "num": len(entries) + 1,
                "name": channel.display_title,
                "stream_type": CLUSTERS[cluster][2],
                "category_id": str(cluster_categories[channel.group]),
                "direct_source": "" if self._skip_direct_source(cluster) else (channel.direct_source or ""),
            })
            icon = "" if self.options.ignore_logo else (channel.logo or "")
            if cluster == "series":
                entry["series_id"] = _numeric_id(channel, len(entries) + 1)
                entry["cover"] = icon
            else:
                entry["stream_id"] = _numeric_id(channel, len(entries) + 1)
                entry["stream_icon"] = icon
                entry["epg_channel_id"] = channel.epg_id or ""
            entries.append(entry)

        documents: dict[str, list] = {}
        for cluster, (categories_file, streams_file, _) in CLUSTERS.items():
            documents[categories_file] = [
                {"category_id": str(category_id), "category_name": name, "parent_id": 0}
                for name, category_id in categories[cluster].items()
            ]
            documents[streams_file] = streams[cluster]
        return documents

    def write(self, channels: Sequence[Channel], target_name: str, destination: Path) -> WriterResult:
        documents = self.build_documents(channels)
        staging = create_staging_dir(destination)
        try:
            for file_name, document in documents.items():
                with open(staging / file_name, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, ensure_ascii=False)
            publish_directory(staging, destination)
        except Exception:
            discard_staging(staging)
            raise

        count = sum(len(documents[streams_file]) for _, streams_file, _ in CLUSTERS.values())
        logger.info("[WRITER] %s: wrote %s xtream entries to %s", target_name, count, destination)
        return WriterResult(target_name=target_name, kind=self.kind, path=str(destination), items_written=count)
