"""
Media Service — image and video generation jobs on the google-genai backend.

Every generation is exposed as a job with submit / poll / fetch semantics:
  1. submit — start the generation and return a MediaJob
  2. poll   — refresh a job that is not done yet
  3. fetch  — pull the finished media out of a done job

Image models answer inline, so their jobs are already done on submit and
need no polling. Video models run as long-running operations.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from consensus_engine.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MediaJob:
    """Opaque handle to a media generation plus whatever it has produced."""
    kind: str  # "image" or "video"
    model: str
    done: bool = False
    handle: Any = None
    images: List[str] = field(default_factory=list)
    video_uri: Optional[str] = None


class MediaService:
    """
    Unified interface for media generation.

    Usage:
        service = MediaService()
        job = await service.submit_video(model, prompt)
        while not job.done:
            await asyncio.sleep(interval)
            job = await service.poll(job)
        job = await service.fetch(job)
    """

    def __init__(self, image_client: Any = None, video_client: Any = None):
        self._image_client = image_client
        self._video_client = video_client

    @staticmethod
    def _make_client(api_key: str):
        from google import genai
        if not api_key:
            raise RuntimeError("No media API key configured. Set MEDIA_API_KEY.")
        return genai.Client(api_key=api_key)

    def _get_image_client(self):
        if self._image_client is None:
            self._image_client = self._make_client(settings.media_api_key)
        return self._image_client

    def _get_video_client(self):
        if self._video_client is None:
            self._video_client = self._make_client(settings.video_api_key)
        return self._video_client

    def has_video_credential(self) -> bool:
        """Video generation is billed separately and needs its own key."""
        return self._video_client is not None or bool(settings.video_api_key)

    async def submit_image(self, model: str, prompt: str) -> MediaJob:
        """Generate an image. The backend answers inline, so the job is done."""
        client = self._get_image_client()
        response = await client.aio.models.generate_content(model=model, contents=prompt)

        images: List[str] = []
        for candidate in response.candidates or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and inline.data:
                    data = inline.data
                    if isinstance(data, bytes):
                        data = base64.b64encode(data).decode("ascii")
                    images.append(data)
        return MediaJob(kind="image", model=model, done=True, handle=response, images=images)

    async def submit_video(self, model: str, prompt: str) -> MediaJob:
        """Start a long-running video generation operation."""
        from google.genai import types

        client = self._get_video_client()
        operation = await client.aio.models.generate_videos(
            model=model,
            prompt=prompt,
            config=types.GenerateVideosConfig(
                number_of_videos=1,
                resolution="1080p",
                aspect_ratio="16:9",
            ),
        )
        logger.info(f"Video job submitted on {model}: {getattr(operation, 'name', '?')}")
        return MediaJob(kind="video", model=model, done=bool(operation.done), handle=operation)

    async def poll(self, job: MediaJob) -> MediaJob:
        """Refresh a pending job."""
        if job.done or job.kind != "video":
            return job
        client = self._get_video_client()
        operation = await client.aio.operations.get(job.handle)
        return MediaJob(kind=job.kind, model=job.model, done=bool(operation.done), handle=operation)

    async def fetch(self, job: MediaJob) -> MediaJob:
        """
        Extract the finished media from a done job.

        Raises:
            RuntimeError: the job failed or produced no media
        """
        if not job.done:
            raise RuntimeError(f"{job.kind} job is not finished")

        if job.kind == "image":
            if not job.images:
                raise RuntimeError(f"Image model {job.model} returned no image data")
            return job

        operation = job.handle
        error = getattr(operation, "error", None)
        if error:
            raise RuntimeError(f"Video generation failed: {error}")
        videos = getattr(getattr(operation, "response", None), "generated_videos", None) or []
        uri = videos[0].video.uri if videos and videos[0].video else None
        if not uri:
            raise RuntimeError(f"Video model {job.model} finished without a video")
        return MediaJob(kind=job.kind, model=job.model, done=True, handle=operation, video_uri=uri)
