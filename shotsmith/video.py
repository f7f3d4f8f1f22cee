"""Video generation over the two provider protocols.

Sync providers answer one chat-shaped request with a message containing an
MP4 link. Async providers take a multipart create request, are polled until
the task reaches a terminal state, and then serve the file from a content
endpoint. ``VideoJobRunner.generate`` hides which protocol ran: both return
the video as a data URL.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import time
from typing import Any, Awaitable, Callable

import httpx

from shotsmith.config import EngineSettings
from shotsmith.errors import (
    DownloadError,
    GenerationError,
    JobTimeoutError,
    NetworkError,
    ParseError,
    RequestTimeoutError,
    ServerBusyError,
    TaskFailedError,
    is_retryable,
)
from shotsmith.imaging import resize_to_cover, to_data_url, video_size
from shotsmith.models import ResolvedModel, VideoTask
from shotsmith.resolver import ModelResolver
from shotsmith.retry import retry
from shotsmith.transport import BaseClient, auth_headers, parse_json, request_timeout, with_deadline

logger = logging.getLogger(__name__)

_MP4_URL_RE = re.compile(r"https?://[^\s]+\.mp4")
_DOWNLOAD_RETRYABLE = (ServerBusyError, RequestTimeoutError, NetworkError)


def veo_model_name(has_start_frame: bool, aspect_ratio: str) -> str:
    """Request name of the Veo variant for a frame mode and orientation."""
    orientation = "portrait" if aspect_ratio == "9:16" else "landscape"
    if has_start_frame:
        return f"veo_3_1_i2v_s_fast_fl_{orientation}"
    return f"veo_3_1_t2v_fast_{orientation}"


def _is_transient_download_error(exc: BaseException) -> bool:
    return isinstance(exc, _DOWNLOAD_RETRYABLE)


def _parse_video_task(data: dict, task_id: str) -> VideoTask:
    """Parse a poll response into a VideoTask."""
    status = str(data.get("status", "unknown"))
    task = VideoTask(task_id=task_id, provider_status=status, progress=data.get("progress"))

    if task.is_success:
        video_id = None
        raw_id = data.get("id")
        if isinstance(raw_id, str) and raw_id.startswith("video_"):
            video_id = raw_id
        else:
            outputs = data.get("outputs") or []
            first = outputs[0] if outputs else None
            video_id = (
                data.get("output_video")
                or data.get("video_id")
                or (first.get("id") if isinstance(first, dict) else None)
                or raw_id
            )
            if not video_id and isinstance(first, str):
                video_id = first
        task.result_video_id = video_id
    elif task.is_done:
        err = data.get("error")
        if isinstance(err, dict):
            task.error = err.get("message") or err.get("code")
        elif isinstance(err, str) and err:
            task.error = err
        task.error = task.error or data.get("message") or "unknown error"
    return task


class VideoJob:
    """One video generation. Subclasses implement a provider protocol."""

    mode = ""

    def __init__(
        self,
        runner: VideoJobRunner,
        model: ResolvedModel,
        prompt: str,
        start_image: str | None = None,
        end_image: str | None = None,
        aspect_ratio: str = "16:9",
        duration: int = 8,
    ) -> None:
        self.runner = runner
        self.model = model
        self.prompt = prompt
        self.start_image = start_image
        self.end_image = end_image
        self.aspect_ratio = aspect_ratio
        self.duration = duration

    @property
    def settings(self) -> EngineSettings:
        return self.runner.settings

    async def run(self) -> str:
        """Run the protocol and return the video as a data URL."""
        raise NotImplementedError


class SyncVideoJob(VideoJob):
    """Single request whose answer links to the finished MP4."""

    mode = "sync"

    def request_model_name(self) -> str:
        name = self.model.api_model
        if name == "veo" or name.startswith("veo_3_1"):
            name = veo_model_name(bool(self.start_image), self.aspect_ratio)
        if self.aspect_ratio == "1:1" and name.startswith("veo_"):
            logger.warning("Veo does not support 1:1 video, using 16:9")
            name = veo_model_name(bool(self.start_image), "16:9")
        return name

    def build_body(self) -> dict[str, Any]:
        content: Any = self.prompt
        if self.start_image:
            content = [
                {"type": "text", "text": self.prompt},
                {"type": "image_url", "image_url": {"url": self.start_image}},
            ]
            if self.end_image:
                content.append({"type": "image_url", "image_url": {"url": self.end_image}})
        return {
            "model": self.request_model_name(),
            "messages": [{"role": "user", "content": content}],
            "stream": False,
            "temperature": 0.7,
        }

    async def run(self) -> str:
        body = self.build_body()
        headers = auth_headers(self.model.api_key)
        deadline = self.settings.sync_video_timeout

        async def attempt() -> dict:
            response = await self.runner._request(
                "POST", self.model.url, json=body, headers=headers, timeout=request_timeout(deadline),
            )
            return parse_json(response)

        logger.info("Requesting %s video (%s, %ss)", body["model"], self.aspect_ratio, self.duration)
        try:
            data = await asyncio.wait_for(
                self.runner._retry(attempt, label=f"video[{body['model']}]"),
                timeout=deadline,
            )
        except asyncio.TimeoutError as exc:
            raise JobTimeoutError(
                f"Video generation timed out after {deadline:.0f}s"
            ) from exc

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ParseError(f"Unexpected video response: {str(data)[:200]}", body=data) from exc

        match = _MP4_URL_RE.search(content if isinstance(content, str) else str(content))
        if not match:
            raise ParseError("Video generation failed: no video URL returned", body=data)

        video_url = match.group(0)
        logger.info("Video ready at %s, fetching", video_url)
        try:
            return await self.runner.fetch_video(video_url)
        except GenerationError as exc:
            raise DownloadError(f"Could not fetch video from {video_url}: {exc}") from exc


class AsyncVideoJob(VideoJob):
    """Create a provider task, poll it, then download the result."""

    mode = "async"

    def _form(self) -> list[tuple[str, tuple]]:
        """Multipart fields of the create request, references last."""
        name = self.model.api_model
        references = [ref for ref in (self.start_image, self.end_image) if ref]
        if name == "sora-2" and len(references) >= 2:
            raise ValueError("sora-2 does not support start and end frames; pass a single reference")

        width, height = video_size(self.aspect_ratio)
        form: list[tuple[str, tuple]] = [
            ("model", (None, name)),
            ("prompt", (None, self.prompt)),
            ("seconds", (None, str(self.duration))),
            ("size", (None, f"{width}x{height}")),
        ]

        def encoded(ref: str) -> bytes:
            return base64.b64decode(resize_to_cover(ref, width, height))

        if name.lower().startswith("veo_3_1-fast"):
            for filename, ref in zip(("reference-start.png", "reference-end.png"), references[:2]):
                form.append(("input_reference[]", (filename, encoded(ref), "image/png")))
        elif references:
            form.append(("input_reference", ("reference.png", encoded(references[0]), "image/png")))
        return form

    # ------------------------------------------------------------------
    # Protocol steps
    # ------------------------------------------------------------------

    async def create_task(self) -> VideoTask:
        """POST the create request and return the new task.

        Raises:
            ValueError: If sora-2 is given two reference frames.
            ParseError: If the response carries no task id.
        """
        form = self._form()
        headers = auth_headers(self.model.api_key)

        async def attempt() -> dict:
            response = await self.runner._request("POST", self.model.url, files=form, headers=headers)
            return parse_json(response)

        logger.info(
            "Creating %s video task (%s, %ss, %d reference(s))",
            self.model.api_model, self.aspect_ratio, self.duration,
            sum(1 for key, _ in form if key.startswith("input_reference")),
        )
        data = await self.runner._retry(attempt, label=f"create[{self.model.api_model}]")
        task_id = data.get("id") or data.get("task_id") if isinstance(data, dict) else None
        if not task_id:
            raise ParseError(f"Create response carried no task id: {str(data)[:200]}", body=data)
        logger.info("Video task created: %s", task_id)
        return VideoTask(task_id=str(task_id), provider_status=str(data.get("status", "queued")))

    async def wait_for_task(self, task: VideoTask) -> str:
        """Poll until the task is terminal and return the result video id.

        Transient poll failures are logged and polling goes on. The remote
        task is not cancelled when the deadline passes.

        Raises:
            TaskFailedError: If the provider reports a failure.
            JobTimeoutError: If no terminal state is seen in time.
        """
        url = f"{self.model.url}/{task.task_id}"
        headers = {**auth_headers(self.model.api_key), "Accept": "application/json"}
        interval = self.settings.poll_interval
        max_wait = self.settings.poll_max_wait
        clock = self.runner._clock

        started = clock()
        while clock() - started < max_wait:
            await self.runner._sleep(interval)
            try:
                response = await self.runner._request("GET", url, headers=headers)
                data = parse_json(response)
            except GenerationError as exc:
                if not is_retryable(exc):
                    raise
                logger.warning("Polling task %s failed: %s. Continuing", task.task_id, exc)
                continue

            task = _parse_video_task(data if isinstance(data, dict) else {}, task.task_id)
            logger.debug(
                "Task %s: status=%s progress=%s (%.0fs elapsed)",
                task.task_id, task.provider_status, task.progress, clock() - started,
            )
            if task.is_success:
                if not task.result_video_id:
                    raise ParseError(f"Task {task.task_id} completed without a video id", body=data)
                logger.info("Task %s done, video id %s", task.task_id, task.result_video_id)
                return task.result_video_id
            if task.is_done:
                raise TaskFailedError(f"Video generation failed: {task.error}", body=data)

        raise JobTimeoutError(
            f"Task {task.task_id} did not complete within {max_wait:.0f}s. "
            f"Last status: {task.provider_status}"
        )

    async def download(self, video_id: str) -> str:
        """Fetch the result video, retrying transient failures.

        Raises:
            DownloadError: When every attempt failed or a failure is not
                transient.
        """
        url = f"{self.model.url}/{video_id}/content"
        headers = {**auth_headers(self.model.api_key), "Accept": "*/*"}
        timeout = self.settings.download_timeout

        async def attempt() -> str:
            response = await with_deadline(
                self.runner._request("GET", url, headers=headers, timeout=request_timeout(timeout)),
                timeout,
                what=f"Download of {video_id}",
            )
            content_type = response.headers.get("content-type", "")
            if "video" in content_type:
                return to_data_url(response.content, content_type.split(";")[0].strip())
            data = parse_json(response)
            link = None
            if isinstance(data, dict):
                link = data.get("url") or data.get("video_url") or data.get("download_url")
            if not link:
                raise ParseError(f"No download URL for video {video_id}", body=data)
            return await self.runner.fetch_video(link)

        backoff = self.settings.download_backoff
        try:
            return await retry(
                attempt,
                self.settings.download_max_attempts,
                delay_for=lambda i: backoff * (i + 1),
                retryable=_is_transient_download_error,
                sleep=self.runner._sleep,
                label=f"download[{video_id}]",
            )
        except GenerationError as exc:
            raise DownloadError(f"Could not download video {video_id}: {exc}") from exc

    async def run(self) -> str:
        task = await self.create_task()
        video_id = await self.wait_for_task(task)
        data_url = await self.download(video_id)
        logger.info("Downloaded video %s (%.1f KB)", video_id, len(data_url) * 3 / 4 / 1024)
        return data_url


_JOB_TYPES: dict[str, type[VideoJob]] = {
    "sync": SyncVideoJob,
    "async": AsyncVideoJob,
}


class VideoJobRunner(BaseClient):
    """Runs video jobs on the protocol of the resolved model.

    Usage::

        async with VideoJobRunner(ModelResolver(config)) as runner:
            video = await runner.generate("Waves at night", start_image=frame)
    """

    def __init__(
        self,
        resolver: ModelResolver,
        http: httpx.AsyncClient | None = None,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(resolver, http=http, settings=settings, sleep=sleep)
        self._clock = clock

    async def fetch_video(self, url: str) -> str:
        """GET a video file and return it as a data URL."""
        response = await self._request("GET", url, timeout=request_timeout(self.settings.download_timeout))
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not content_type.startswith("video/"):
            content_type = "video/mp4"
        return to_data_url(response.content, content_type)

    def job_for(
        self,
        prompt: str,
        start_image: str | None = None,
        end_image: str | None = None,
        model_hint: str | None = None,
        aspect_ratio: str = "16:9",
        duration: int = 8,
    ) -> VideoJob:
        """Resolve the model and build the job for its protocol."""
        model = self.resolver.resolve("video", model_hint)
        job_cls = _JOB_TYPES.get(model.mode)
        if job_cls is None:
            raise ValueError(f"Unknown video mode {model.mode!r} for model {model.model_id}")
        return job_cls(self, model, prompt, start_image, end_image, aspect_ratio, duration)

    async def generate(
        self,
        prompt: str,
        start_image: str | None = None,
        end_image: str | None = None,
        model_hint: str | None = None,
        aspect_ratio: str = "16:9",
        duration: int = 8,
    ) -> str:
        """Generate a video clip.

        Args:
            prompt: Video prompt.
            start_image: Start frame as a data URL.
            end_image: End frame as a data URL.
            model_hint: Video model id; the active video model when None.
            aspect_ratio: "16:9", "9:16" or "1:1".
            duration: Clip length in seconds.

        Returns:
            The video as a ``data:video/...;base64,`` URL.
        """
        job = self.job_for(prompt, start_image, end_image, model_hint, aspect_ratio, duration)
        logger.info("Generating video with %s (%s mode)", job.model.model_id, job.mode)
        return await job.run()
