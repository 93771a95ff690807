"""
M3U playlist writer.

Emits `#EXTM3U` followed by one `#EXTINF` line and stream URL per channel.
Series containers (xtream get_series records) have no playable URL and are
left out of the playlist.
"""
import logging
from pathlib import Path
from typing import Optional, Sequence

from channel import Channel, ChannelKind
from writers.common import CatalogWriter, WriterResult, atomic_write_text

logger = logging.getLogger(__name__)


def _attribute(value: Optional[str]) -> str:
    # Quotes would end the attribute early
    return (value or "").replace('"', "'")


class M3UWriter(CatalogWriter):
    kind = "m3u"

    def default_destination(self, output_dir: Path, target_name: str, filename: Optional[str]) -> Path:
        return Path(output_dir) / (filename or f"{target_name}.m3u")

    def render_entry(self, channel: Channel) -> str:
        attributes = [
            f'tvg-id="{_attribute(channel.epg_id)}"',
            f'tvg-name="{_attribute(channel.name)}"',
        ]
        if channel.logo and not self.options.ignore_logo:
            attributes.append(f'tvg-logo="{_attribute(channel.logo)}"')
        attributes.append(f'group-title="{_attribute(channel.group)}"')
        title = channel.display_title.replace("\n", " ")
        return f"#EXTINF:-1 {' '.join(attributes)},{title}\n{channel.url}\n"

    def render(self, channels: Sequence[Channel]) -> tuple[str, int]:
        parts = ["#EXTM3U\n"]
        count = 0
        for channel in channels:
            if channel.kind == ChannelKind.SERIES_INFO:
                continue
            parts.append(self.render_entry(channel))
            count += 1
        return "".join(parts), count

    def write(self, channels: Sequence[Channel], target_name: str, destination: Path) -> WriterResult:
        text, count = self.render(channels)
        atomic_write_text(destination, text)
        logger.info("[WRITER] %s: wrote %s entries to %s", target_name, count, destination)
        return WriterResult(target_name=target_name, kind=self.kind, path=str(destination), items_written=count)
