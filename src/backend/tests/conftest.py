"""
Shared fakes for the consensus pipeline tests.

The backend services are replaced with scripted stand-ins injected through
constructors; sleeps are recorded instead of awaited.
"""
from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from consensus_engine.agent.orchestrator import Orchestrator
from consensus_engine.models.schemas import FramingProfile
from consensus_engine.services.llm import Completion
from consensus_engine.services.media import MediaJob
from consensus_engine.services.retry import RetryPolicy
from consensus_engine.tools.workers import WorkerPoolExecutor


class RecordingSleep:
    """Async sleep replacement that only remembers the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RateLimited(Exception):
    """Looks like a provider 429."""

    status_code = 429


class FakeLLM:
    """
    Scripted LLMService.

    Args:
        structured: response_model name -> instance, dict or exception
        replies: model id -> list of replies (str, Completion or exception),
            consumed one per call; the last one repeats
        fragments: what stream() yields
        stream_error: raised by stream() after the fragments
        critique: generate() reply (str or exception)
    """

    def __init__(
        self,
        structured: Optional[Dict[str, Any]] = None,
        replies: Optional[Dict[str, List[Any]]] = None,
        fragments: Sequence[str] = ("Confidence: High\n\n", "The answer."),
        stream_error: Optional[Exception] = None,
        critique: Any = "Looks sound.",
    ):
        self.structured = structured or {}
        self.replies = replies or {}
        self.fragments = list(fragments)
        self.stream_error = stream_error
        self.critique = critique
        self.calls: List[Dict[str, Any]] = []

    async def generate_structured(self, prompt: str, response_model: type, **kwargs) -> Any:
        self.calls.append({"kind": "structured", "name": response_model.__name__, "prompt": prompt, **kwargs})
        value = self.structured.get(response_model.__name__)
        if value is None:
            raise ValueError(f"No scripted {response_model.__name__}")
        if isinstance(value, Exception):
            raise value
        if isinstance(value, dict):
            return response_model.model_validate(value)
        return value

    async def complete(self, prompt: str, **kwargs) -> Completion:
        self.calls.append({"kind": "complete", "prompt": prompt, **kwargs})
        model = kwargs.get("model")
        queue = self.replies.get(model)
        if not queue:
            return Completion(text=f"Answer from {model}.")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, Completion):
            return reply
        return Completion(text=reply)

    async def generate(self, prompt: str, **kwargs) -> str:
        self.calls.append({"kind": "generate", "prompt": prompt, **kwargs})
        if isinstance(self.critique, Exception):
            raise self.critique
        return self.critique

    async def stream(self, prompt: str, **kwargs):
        self.calls.append({"kind": "stream", "prompt": prompt, **kwargs})
        for fragment in self.fragments:
            yield fragment
        if self.stream_error is not None:
            raise self.stream_error

    def calls_of(self, kind: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]


class FakeOpenAI:
    """Minimal AsyncOpenAI stand-in: only chat.completions.create."""

    def __init__(
        self,
        reply: str = "",
        annotations: Optional[List[Any]] = None,
        stream_chunks: Sequence[Optional[str]] = (),
        error: Optional[Exception] = None,
    ):
        self.reply = reply
        self.annotations = annotations
        self.stream_chunks = list(stream_chunks)
        self.error = error
        self.requests: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        if kwargs.get("stream"):
            return self._stream()
        message = SimpleNamespace(content=self.reply, annotations=self.annotations)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    async def _stream(self):
        yield SimpleNamespace(choices=[])
        for text in self.stream_chunks:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


class FakeMedia:
    """Scripted MediaService: images finish on submit, videos after ``video_polls`` polls."""

    def __init__(
        self,
        video_credential: bool = True,
        video_polls: int = 2,
        images: Sequence[str] = ("aW1hZ2U=",),
        video_uri: str = "https://media.example/video.mp4",
        submit_errors: Optional[List[Exception]] = None,
    ):
        self.video_credential = video_credential
        self.video_polls = video_polls
        self.images = list(images)
        self.video_uri = video_uri
        self.submit_errors = list(submit_errors or [])
        self.submitted: List[tuple] = []
        self.poll_count = 0

    def has_video_credential(self) -> bool:
        return self.video_credential

    async def submit_image(self, model: str, prompt: str) -> MediaJob:
        self.submitted.append(("image", model, prompt))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return MediaJob(kind="image", model=model, done=True, images=list(self.images))

    async def submit_video(self, model: str, prompt: str) -> MediaJob:
        self.submitted.append(("video", model, prompt))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return MediaJob(kind="video", model=model, done=False, handle=0)

    async def poll(self, job: MediaJob) -> MediaJob:
        self.poll_count += 1
        polls = job.handle + 1
        return MediaJob(kind=job.kind, model=job.model, done=polls >= self.video_polls, handle=polls)

    async def fetch(self, job: MediaJob) -> MediaJob:
        if job.kind == "video":
            return MediaJob(kind="video", model=job.model, done=True, handle=job.handle, video_uri=self.video_uri)
        return job


class EventLog:
    """Collects TurnCallbacks events in arrival order."""

    def __init__(self):
        self.events: List[tuple] = []

    def recorder(self, name: str) -> Callable:
        async def record(*args):
            self.events.append((name,) + args)
        return record

    def of(self, name: str) -> List[tuple]:
        return [e for e in self.events if e[0] == name]


ROUTING_DEFAULT = {"selectedIds": ["flash-generalist", "pro-reasoner"], "reasoning": "General question."}

FRAMING_SCIENCE = {
    "domain": "science",
    "framingIntent": "educational-neutral",
    "correctionTolerance": "high",
    "authoritySource": "scientific",
    "audienceType": "general-public",
}


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry(sleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=2.0, max_jitter=1.0, sleep=sleep)


@pytest.fixture
def science_framing() -> FramingProfile:
    return FramingProfile.model_validate(FRAMING_SCIENCE)


def scripted_llm(routing=ROUTING_DEFAULT, **kwargs) -> FakeLLM:
    """A FakeLLM whose framing and routing calls succeed."""
    return FakeLLM(
        structured={"FramingProfile": FRAMING_SCIENCE, "RoutingDecision": routing},
        **kwargs,
    )


def make_orchestrator(llm, media=None, workers=None) -> Orchestrator:
    """An Orchestrator wired to fakes, with sleeps recorded instead of awaited."""
    sleep = RecordingSleep()
    workers = workers or WorkerPoolExecutor(
        llm=llm,
        media=media or FakeMedia(),
        retry=RetryPolicy(max_attempts=5, base_delay=2.0, max_jitter=1.0, sleep=sleep),
        stagger_seconds=1.5,
        poll_interval_seconds=10.0,
        sleep=sleep,
    )
    return Orchestrator(workers=workers, llm=llm)
