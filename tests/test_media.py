from __future__ import annotations

import asyncio

import pytest

from topic_bridge.errors import ConversionError
from topic_bridge.media import MediaTranscoder


def test_unsupported_pair_and_empty_data_raise() -> None:
    transcoder = MediaTranscoder()

    with pytest.raises(ConversionError):
        asyncio.run(transcoder.convert(b"data", "tgs", "webp"))
    with pytest.raises(ConversionError):
        asyncio.run(transcoder.convert(b"", "webp", "png"))


def test_missing_binary_is_a_conversion_error() -> None:
    transcoder = MediaTranscoder(cmd="definitely-not-ffmpeg-binary")

    with pytest.raises(ConversionError):
        asyncio.run(transcoder.convert(b"RIFF....WEBP", "webp", "png"))
    with pytest.raises(ConversionError):
        asyncio.run(transcoder.convert(b"\x1aE\xdf\xa3", "WEBM", "webp"))
