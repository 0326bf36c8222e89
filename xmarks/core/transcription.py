"""Video transcription: audio extraction, chunking and speech-to-text.

Job phases: requested -> audio_extracted -> direct | chunked -> transcribed,
with failed reachable from any of them. Failures are fatal for the job
and surface as TranscriptionError; nothing is retried automatically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from xmarks.core.storage import sanitize_bookmark_id

if TYPE_CHECKING:
    from xmarks.core.settings import Settings

logger = logging.getLogger(__name__)

# Provider rejects uploads above 25MB; keep a working margin
MAX_DIRECT_BYTES = 24 * 1024 * 1024

# Segment length for oversized audio
CHUNK_SECONDS = 600

OPENAI_API_BASE = "https://api.openai.com/v1"
DEFAULT_WHISPER_MODEL = "whisper-1"


class TranscriptionError(Exception):
    """Error during a transcription job."""

    def __init__(self, message: str, retriable: bool = False):
        super().__init__(message)
        self.retriable = retriable


class TranscriptionPhase(str, Enum):
    REQUESTED = "requested"
    AUDIO_EXTRACTED = "audio_extracted"
    DIRECT = "direct"
    CHUNKED = "chunked"
    TRANSCRIBED = "transcribed"
    FAILED = "failed"


class TranscriptionStrategy(str, Enum):
    DIRECT = "direct"
    CHUNKED = "chunked"
    CACHED = "cached"


@dataclass
class TranscriptionResult:
    transcript: str
    video_url: str
    strategy: TranscriptionStrategy
    duration: float | None = None
    chunks: int = 1


# ── External commands ────────────────────────────────────────


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


class CommandRunner(ABC):
    """Runs external binaries (yt-dlp, ffprobe, ffmpeg)."""

    @abstractmethod
    async def run(self, args: list[str]) -> CommandResult:
        ...


class SubprocessRunner(CommandRunner):
    """CommandRunner backed by asyncio subprocesses. No timeout is applied."""

    async def run(self, args: list[str]) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TranscriptionError(f"Executable not found: {args[0]}") from e

        stdout, stderr = await process.communicate()
        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="ignore"),
            stderr=stderr.decode("utf-8", errors="ignore"),
        )


# ── Speech-to-text provider ──────────────────────────────────


class SpeechToTextProvider(ABC):
    """Abstract base class for speech-to-text backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def transcribe_file(self, path: Path) -> str:
        """Transcribe one audio file and return its text.

        Raises:
            TranscriptionError: If the provider call fails.
        """
        ...

    async def close(self) -> None:
        return None


class WhisperProvider(SpeechToTextProvider):
    """OpenAI audio transcription endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_WHISPER_MODEL,
        client: httpx.AsyncClient | None = None,
        api_base: str = OPENAI_API_BASE,
    ) -> None:
        if not api_key:
            raise TranscriptionError("OpenAI API key not configured (OPENAI_API_KEY or XMARKS_OPENAI_KEY_PATH)")
        self._api_key = api_key
        self._model = model
        self._api_base = api_base.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def name(self) -> str:
        return "OpenAI"

    async def _get_client(self) -> httpx.AsyncClient:
        # Uploads of long audio may take a while; only connection setup is bounded
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=30.0))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def transcribe_file(self, path: Path) -> str:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self._api_base}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data={"model": self._model, "response_format": "json"},
                files={"file": (path.name, path.read_bytes(), "audio/mpeg")},
            )
            response.raise_for_status()
            return (response.json().get("text") or "").strip()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise TranscriptionError("OpenAI API key rejected") from e
            if status == 413:
                raise TranscriptionError(f"Audio file too large for provider: {path.name}") from e
            if status == 429:
                raise TranscriptionError("OpenAI rate limit or quota exceeded", retriable=True) from e
            raise TranscriptionError(f"OpenAI API error: {status} - {e.response.text}") from e

        except httpx.HTTPError as e:
            raise TranscriptionError(f"OpenAI request failed: {type(e).__name__}: {e}", retriable=True) from e


def build_provider(settings: "Settings") -> SpeechToTextProvider | None:
    """WhisperProvider for the configured key, or None without one."""
    api_key = settings.resolve_openai_key()
    if not api_key:
        return None
    return WhisperProvider(api_key=api_key, model=settings.whisper_model)


# ── Service ──────────────────────────────────────────────────


class TranscriptionService:
    """Turns a video URL into a transcript.

    Audio is pulled with yt-dlp into the temp dir. Files within the
    provider's size limit are sent whole; larger ones are split with
    ffmpeg's segment muxer and the parts transcribed in order.
    """

    def __init__(
        self,
        temp_dir: str | Path,
        provider: SpeechToTextProvider | None,
        runner: CommandRunner | None = None,
        yt_dlp_path: str = "yt-dlp",
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        max_direct_bytes: int = MAX_DIRECT_BYTES,
        chunk_seconds: int = CHUNK_SECONDS,
    ) -> None:
        self.temp_dir = Path(temp_dir)
        self._provider = provider
        self._runner = runner or SubprocessRunner()
        self._yt_dlp = yt_dlp_path
        self._ffmpeg = ffmpeg_path
        self._ffprobe = ffprobe_path
        self._max_direct_bytes = max_direct_bytes
        self._chunk_seconds = chunk_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        runner: CommandRunner | None = None,
        provider: SpeechToTextProvider | None = None,
    ) -> TranscriptionService:
        return cls(
            temp_dir=settings.temp_audio_dir,
            provider=provider if provider is not None else build_provider(settings),
            runner=runner,
            yt_dlp_path=settings.yt_dlp_path,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
        )

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()

    def _lock_for(self, safe_id: str) -> asyncio.Lock:
        lock = self._locks.get(safe_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[safe_id] = lock
        return lock

    def audio_path_for(self, bookmark_id: str) -> Path:
        return self.temp_dir / f"{sanitize_bookmark_id(bookmark_id)}.mp3"

    def _chunk_files(self, safe_id: str) -> list[Path]:
        return sorted(self.temp_dir.glob(f"{safe_id}_chunk_*.mp3"))

    async def _run(self, args: list[str], what: str) -> CommandResult:
        result = await self._runner.run(args)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise TranscriptionError(f"{what} failed (exit {result.returncode}): {detail}")
        return result

    async def _extract_audio(self, video_url: str, safe_id: str, audio_path: Path) -> str:
        """Pull an MP3 track into audio_path. Returns the final page URL."""
        args = [
            self._yt_dlp,
            "--no-playlist",
            "--no-check-certificates",
            "-x",
            "--audio-format",
            "mp3",
            "-o",
            str(self.temp_dir / f"{safe_id}.%(ext)s"),
            "--print",
            "after_move:webpage_url",
            "--no-simulate",
        ]
        if "/" in self._ffmpeg or "\\" in self._ffmpeg:
            args += ["--ffmpeg-location", self._ffmpeg]
        args.append(video_url)

        result = await self._run(args, "Audio extraction")
        if not audio_path.is_file():
            raise TranscriptionError(f"Audio extraction produced no file at {audio_path}")

        printed = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if printed and printed[-1].startswith(("http://", "https://")):
            return printed[-1]
        return video_url

    async def _probe_duration(self, audio_path: Path) -> float:
        result = await self._run(
            [
                self._ffprobe,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(audio_path),
            ],
            "Duration probe",
        )
        try:
            return float(result.stdout.strip().splitlines()[0])
        except (ValueError, IndexError) as e:
            raise TranscriptionError(
                f"Duration probe returned no duration for {audio_path.name}: {result.stdout.strip()[:200]!r}"
            ) from e

    async def _split_audio(self, audio_path: Path, safe_id: str) -> list[Path]:
        await self._run(
            [
                self._ffmpeg,
                "-hide_banner",
                "-loglevel",
                "error",
                "-y",
                "-i",
                str(audio_path),
                "-f",
                "segment",
                "-segment_time",
                str(self._chunk_seconds),
                "-c",
                "copy",
                "-reset_timestamps",
                "1",
                str(self.temp_dir / f"{safe_id}_chunk_%03d.mp3"),
            ],
            "Audio segmentation",
        )
        chunks = self._chunk_files(safe_id)
        if not chunks:
            raise TranscriptionError("Audio segmentation produced no chunks")
        return chunks

    def _cleanup(self, safe_id: str, audio_path: Path) -> None:
        for path in [*self._chunk_files(safe_id), audio_path]:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove temp file {path}: {e}")

    async def transcribe(self, video_url: str, bookmark_id: str) -> TranscriptionResult:
        """Run the full pipeline for one video.

        Jobs for the same bookmark share temp file names and run one
        at a time.

        Raises:
            TranscriptionError: On missing credentials or any failed step.
        """
        if self._provider is None:
            raise TranscriptionError("Transcription provider not configured (missing OpenAI API key)")

        safe_id = sanitize_bookmark_id(bookmark_id)
        async with self._lock_for(safe_id):
            return await self._run_job(video_url, bookmark_id, safe_id)

    async def _run_job(self, video_url: str, bookmark_id: str, safe_id: str) -> TranscriptionResult:
        audio_path = self.audio_path_for(bookmark_id)
        phase = TranscriptionPhase.REQUESTED
        started = time.monotonic()

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self._cleanup(safe_id, audio_path)

        try:
            logger.info(f"Extracting audio for {bookmark_id} from {video_url}")
            final_url = await self._extract_audio(video_url, safe_id, audio_path)
            phase = TranscriptionPhase.AUDIO_EXTRACTED

            duration = await self._probe_duration(audio_path)
            size = audio_path.stat().st_size
            logger.info(f"Audio for {bookmark_id}: {duration:.0f}s, {size / 1024 / 1024:.1f}MB")

            if size <= self._max_direct_bytes:
                phase = TranscriptionPhase.DIRECT
                logger.info(f"Sending {audio_path.name} to {self._provider.name}")
                transcript = await self._provider.transcribe_file(audio_path)
                strategy = TranscriptionStrategy.DIRECT
                chunk_count = 1
            else:
                phase = TranscriptionPhase.CHUNKED
                chunks = await self._split_audio(audio_path, safe_id)
                logger.info(f"Audio for {bookmark_id} split into {len(chunks)} chunks")
                parts = []
                for index, chunk in enumerate(chunks, start=1):
                    logger.info(f"Sending chunk {index}/{len(chunks)} to {self._provider.name}")
                    text = (await self._provider.transcribe_file(chunk)).strip()
                    if text:
                        parts.append(text)
                transcript = "\n\n".join(parts)
                strategy = TranscriptionStrategy.CHUNKED
                chunk_count = len(chunks)

            phase = TranscriptionPhase.TRANSCRIBED
            logger.info(
                f"Transcribed {bookmark_id} ({strategy.value}, {len(transcript)} chars) "
                f"in {time.monotonic() - started:.1f}s"
            )
            return TranscriptionResult(
                transcript=transcript,
                video_url=final_url,
                strategy=strategy,
                duration=duration,
                chunks=chunk_count,
            )

        except TranscriptionError:
            logger.error(f"Transcription for {bookmark_id} failed during {phase.value}")
            raise

        except OSError as e:
            logger.error(f"Transcription for {bookmark_id} failed during {phase.value}: {e}")
            raise TranscriptionError(f"Transcription failed during {phase.value}: {e}") from e

        finally:
            self._cleanup(safe_id, audio_path)
