"""
Channel-list source: the JSON file of channel names scraped every cycle.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable

from onlinewatch.errors import ChannelListError
from onlinewatch.fetcher import is_valid_channel_name

logger = logging.getLogger(__name__)


def filter_channels(raw: Iterable[Any]) -> list[str]:
    """Drop null/blank/non-string entries and repeats, keeping list order."""
    valid = [ch for ch in raw if is_valid_channel_name(ch)]
    unique = list(dict.fromkeys(valid))
    return unique


class ChannelListSource:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> Any:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ChannelListError(f"{self.path} not found") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ChannelListError(f"cannot read {self.path}: {e}") from e

    async def load(self) -> list[str]:
        """Snapshot of the channel list for one cycle."""
        data = await asyncio.to_thread(self._read)
        if not isinstance(data, list):
            raise ChannelListError(f"{self.path} must contain a JSON array, got {type(data).__name__}")
        channels = filter_channels(data)
        if len(channels) != len(data):
            logger.warning("Filtered out %d invalid or duplicate channels", len(data) - len(channels))
        return channels
