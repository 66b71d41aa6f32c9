"""Tests for the google-genai media service, against fake clients."""
from types import SimpleNamespace

import pytest

from consensus_engine.services.media import MediaJob, MediaService


def _image_response(*payloads):
    parts = [SimpleNamespace(inline_data=None, text="Here you go")]
    parts += [SimpleNamespace(inline_data=SimpleNamespace(data=p)) for p in payloads]
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])


class FakeGenaiClient:
    def __init__(self, image_response=None, operations=()):
        self.image_response = image_response
        self.operations = list(operations)
        self.video_requests = []

        async def generate_content(model, contents):
            return self.image_response

        async def generate_videos(model, prompt, config):
            self.video_requests.append((model, prompt, config))
            return self.operations.pop(0)

        async def get(operation):
            return self.operations.pop(0)

        self.aio = SimpleNamespace(
            models=SimpleNamespace(generate_content=generate_content, generate_videos=generate_videos),
            operations=SimpleNamespace(get=get),
        )


def _video_op(done, uri=None, error=None):
    videos = [SimpleNamespace(video=SimpleNamespace(uri=uri))] if uri else []
    return SimpleNamespace(
        name="operations/veo-1", done=done, error=error,
        response=SimpleNamespace(generated_videos=videos),
    )


@pytest.mark.asyncio
async def test_image_job_is_done_on_submit_with_base64_data():
    service = MediaService(image_client=FakeGenaiClient(image_response=_image_response(b"png-bytes", "YWxyZWFkeQ==")))

    job = await service.submit_image("image-model", "Draw a red bicycle")

    assert job.done is True
    assert job.images == ["cG5nLWJ5dGVz", "YWxyZWFkeQ=="]
    assert await service.fetch(job) is job


@pytest.mark.asyncio
async def test_image_without_data_fails_on_fetch():
    service = MediaService(image_client=FakeGenaiClient(image_response=_image_response()))
    job = await service.submit_image("image-model", "Draw")
    with pytest.raises(RuntimeError, match="no image data"):
        await service.fetch(job)


@pytest.mark.asyncio
async def test_video_job_polls_then_fetches_uri():
    client = FakeGenaiClient(operations=[
        _video_op(done=False),
        _video_op(done=False),
        _video_op(done=True, uri="https://media.example/v.mp4"),
    ])
    service = MediaService(video_client=client)

    job = await service.submit_video("video-model", "A cat surfing")
    polls = 0
    while not job.done:
        job = await service.poll(job)
        polls += 1
    job = await service.fetch(job)

    assert polls == 2
    assert job.video_uri == "https://media.example/v.mp4"
    config = client.video_requests[0][2]
    assert config.resolution == "1080p"
    assert config.aspect_ratio == "16:9"
    assert config.number_of_videos == 1


@pytest.mark.asyncio
async def test_failed_video_operation_raises():
    service = MediaService(video_client=FakeGenaiClient())
    job = MediaJob(kind="video", model="video-model", done=True, handle=_video_op(True, error={"code": 8}))
    with pytest.raises(RuntimeError, match="Video generation failed"):
        await service.fetch(job)


@pytest.mark.asyncio
async def test_fetch_requires_finished_job():
    service = MediaService(video_client=FakeGenaiClient())
    with pytest.raises(RuntimeError, match="not finished"):
        await service.fetch(MediaJob(kind="video", model="m"))


def test_injected_video_client_counts_as_credential():
    assert MediaService(video_client=FakeGenaiClient()).has_video_credential() is True
