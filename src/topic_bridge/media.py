"""Media transcoding backed by ffmpeg."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import ffmpeg

from .errors import ConversionError

logger = logging.getLogger(__name__)

VIDEO_NOTE_SIZE = 240
VIDEO_NOTE_MAX_SECONDS = 60
STICKER_SIZE = 512


@dataclass(frozen=True, slots=True)
class _Profile:
    output_ext: str
    output_kwargs: dict[str, Any]
    filters: str | None = None


_PROFILES: dict[tuple[str, str], _Profile] = {
    ("webp", "png"): _Profile(output_ext="png", output_kwargs={"vframes": 1}),
    ("mp4", "video_note"): _Profile(
        output_ext="mp4",
        output_kwargs={
            "t": VIDEO_NOTE_MAX_SECONDS,
            "vcodec": "libx264",
            "acodec": "aac",
            "movflags": "+faststart",
        },
        filters=(
            f"scale={VIDEO_NOTE_SIZE}:{VIDEO_NOTE_SIZE}:force_original_aspect_ratio=increase,"
            f"crop={VIDEO_NOTE_SIZE}:{VIDEO_NOTE_SIZE}"
        ),
    ),
    ("webm", "webp"): _Profile(
        output_ext="webp",
        output_kwargs={"loop": 0, "an": None, "vcodec": "libwebp"},
        filters=(
            f"scale={STICKER_SIZE}:{STICKER_SIZE}:force_original_aspect_ratio=decrease,"
            f"pad={STICKER_SIZE}:{STICKER_SIZE}:(ow-iw)/2:(oh-ih)/2:color=0x00000000"
        ),
    ),
    ("mp4", "webp"): _Profile(
        output_ext="webp",
        output_kwargs={"loop": 0, "an": None, "vcodec": "libwebp"},
        filters=(
            f"scale={STICKER_SIZE}:{STICKER_SIZE}:force_original_aspect_ratio=decrease,"
            f"pad={STICKER_SIZE}:{STICKER_SIZE}:(ow-iw)/2:(oh-ih)/2:color=0x00000000"
        ),
    ),
}


class TranscoderProtocol(Protocol):
    async def convert(self, data: bytes, source_format: str, target_format: str) -> bytes: ...


class MediaTranscoder:
    """Run ffmpeg conversions in a worker thread.

    Supported pairs: ``webp → png`` (still sticker fallback), ``mp4 →
    video_note`` (square 240px clip up to a minute) and ``webm``/``mp4 →
    webp`` (animated sticker).
    """

    def __init__(self, *, cmd: str = "ffmpeg") -> None:
        self._cmd = cmd

    async def convert(self, data: bytes, source_format: str, target_format: str) -> bytes:
        key = (source_format.lower(), target_format.lower())
        profile = _PROFILES.get(key)
        if profile is None:
            raise ConversionError(f"Неподдерживаемое преобразование {key[0]} → {key[1]}")
        if not data:
            raise ConversionError("Пустые данные для преобразования")
        return await asyncio.to_thread(self._run, data, key[0], profile)

    def _run(self, data: bytes, source_ext: str, profile: _Profile) -> bytes:
        with tempfile.TemporaryDirectory(prefix="topic-bridge-") as workdir:
            source = Path(workdir) / f"input.{source_ext}"
            target = Path(workdir) / f"output.{profile.output_ext}"
            source.write_bytes(data)
            stream = ffmpeg.input(str(source))
            if profile.filters:
                output = stream.output(str(target), vf=profile.filters, **profile.output_kwargs)
            else:
                output = stream.output(str(target), **profile.output_kwargs)
            try:
                output.run(cmd=self._cmd, overwrite_output=True, quiet=True)
            except ffmpeg.Error as exc:
                stderr = (exc.stderr or b"").decode("utf-8", "replace").strip()
                logger.warning("ffmpeg завершился с ошибкой: %s", stderr[-300:])
                raise ConversionError(stderr[-300:] or "ffmpeg error") from exc
            except FileNotFoundError as exc:
                raise ConversionError(f"Не найден исполняемый файл {self._cmd}") from exc
            if not target.exists():
                raise ConversionError("ffmpeg не создал выходной файл")
            return target.read_bytes()
