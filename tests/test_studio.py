import asyncio

import httpx
import pytest

from conftest import PASS_ID
from fake_backend import FakeMma
from mma.api_client import MmaApiClient
from mma.errors import JobTerminalError, SubmissionError
from mma.orchestrator import JobOrchestrator
from mma.payloads import STILL_CREATE_PATH, build_still_payload
from mma.studio import Studio
from mma.utils import host_of


def _studio(fake, settings):
    return Studio(MmaApiClient(PASS_ID, settings=settings, transport=fake.transport()), settings=settings)


@pytest.mark.asyncio
async def test_still_job_end_to_end(test_settings):
    fake = FakeMma()
    studio = _studio(fake, test_settings)
    progress = []

    job = await studio.create_still("X", tone="editorial", on_progress=lambda e: progress.append(e.status))

    assert [s for s in progress] == ["queued", "scanning", "prompting"]
    assert job.status == "done"
    assert host_of(job.primary_url) == test_settings.ASSET_HOST
    assert job.primary_url == "https://assets.faltastudio.com/still/out.png"
    assert fake.store_calls[0]["sourceUrl"] == fake.output_url

    body = fake.create_calls[0]
    assert body["inputs"]["brief"] == "X"
    assert body["idempotency_key"]
    assert body["inputs"]["idempotency_key"] == body["idempotency_key"]
    assert fake.sse_calls == 1

    assert studio.credits.snapshot(PASS_ID).balance == 42
    assert job.credits_cost == 1


@pytest.mark.asyncio
async def test_rapid_double_create_posts_once(test_settings):
    fake = FakeMma(create_delay=0.05)
    studio = _studio(fake, test_settings)

    first, second = await asyncio.gather(studio.create_still("X"), studio.create_still("X"))

    assert len(fake.create_calls) == 1
    assert first.id == second.id == "gen-1"


@pytest.mark.asyncio
async def test_broken_channel_falls_back_to_polling(test_settings):
    fake = FakeMma(sse_status=500, polls_before_done=2, poll_error_status=503)
    studio = _studio(fake, test_settings)
    loop = asyncio.get_running_loop()
    started = loop.time()

    job = await studio.create_still("X")

    assert loop.time() - started < test_settings.POLL_TIMEOUT_SECONDS
    assert job.status == "done"
    assert not job.inconclusive
    assert fake.sse_calls == 2
    assert fake.poll_calls == 3


@pytest.mark.asyncio
async def test_failed_job_raises_terminal_error(test_settings):
    fake = FakeMma(final_status="error", final_error={"code": "INSUFFICIENT_CREDITS", "message": "need 5 matchas"})
    studio = _studio(fake, test_settings)

    with pytest.raises(JobTerminalError) as exc:
        await studio.create_still("X")

    assert exc.value.code == "INSUFFICIENT_CREDITS"
    assert exc.value.job.id == "gen-1"
    assert studio.credits.snapshot(PASS_ID).dirty
    assert fake.store_calls == []


@pytest.mark.asyncio
async def test_animate_stabilizes_video_output(test_settings):
    fake = FakeMma(output_url="https://kling.example.com/clips/v.mp4?Expires=99&Signature=x")
    studio = _studio(fake, test_settings)

    job = await studio.animate("https://assets.faltastudio.com/still/out.png", "slow push in")

    assert job.mode == "video"
    assert job.primary_url == "https://assets.faltastudio.com/video/v.mp4"
    body = fake.create_calls[0]
    assert body["assets"]["start_image_url"] == "https://assets.faltastudio.com/still/out.png"
    assert body["inputs"]["intent"] == "animate"


@pytest.mark.asyncio
async def test_suggest_motion_returns_prompt(test_settings):
    fake = FakeMma()
    studio = _studio(fake, test_settings)

    prompt = await studio.suggest_motion("https://assets.faltastudio.com/still/out.png")

    assert prompt == "slow orbit around the bottle, soft rim light"
    assert fake.create_calls[0]["inputs"]["suggest_only"] is True


@pytest.mark.asyncio
async def test_suggest_and_animate_are_not_merged(test_settings):
    fake = FakeMma(create_delay=0.02)
    studio = _studio(fake, test_settings)
    start = "https://assets.faltastudio.com/still/out.png"

    await asyncio.gather(studio.suggest_motion(start), studio.animate(start, "pan left"))
    assert len(fake.create_calls) == 2


@pytest.mark.asyncio
async def test_tweak_posts_feedback_for_generation(test_settings):
    fake = FakeMma()
    studio = _studio(fake, test_settings)
    job = await studio.create_still("X")

    tweaked = await studio.tweak(job.id, "  warmer light ")

    body = fake.create_calls[1]
    assert body["feedback"] == "warmer light"
    assert body["inputs"]["tweak"] == "warmer light"
    assert body["generation_id"] == job.id
    assert tweaked.id == "gen-2"

    with pytest.raises(ValueError):
        await studio.tweak(job.id, "   ")


@pytest.mark.asyncio
async def test_tweak_of_unknown_generation_is_rejected(test_settings):
    studio = _studio(FakeMma(), test_settings)

    with pytest.raises(SubmissionError) as exc:
        await studio.tweak("gen-404", "brighter")
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_like_and_feedback_are_recorded(test_settings):
    fake = FakeMma()
    studio = _studio(fake, test_settings)
    job = await studio.create_still("X")

    assert await studio.like(job)
    assert await studio.send_feedback(job, "love the grain")
    assert await studio.send_feedback(job, "  ") is False

    assert [e["event_type"] for e in fake.events] == ["like", "feedback"]
    assert fake.events[0]["generation_id"] == job.id
    assert fake.events[1]["payload"]["comment"] == "love the grain"


@pytest.mark.asyncio
async def test_balance_reads_ledger(test_settings):
    fake = FakeMma(balance=7)
    studio = _studio(fake, test_settings)
    assert await studio.balance() == 7


@pytest.mark.asyncio
async def test_uploads_feed_still_assets(test_settings):
    fake = FakeMma()
    studio = _studio(fake, test_settings)
    studio.uploads.add_url("inspiration", "https://assets.faltastudio.com/inspiration/mood.jpg")
    await studio.uploads.wait_idle()

    await studio.create_still("X")
    assert fake.create_calls[0]["assets"]["inspiration_image_urls"] == [
        "https://assets.faltastudio.com/inspiration/mood.jpg"
    ]


@pytest.mark.asyncio
async def test_without_progress_channel_only_polls(make_api, test_settings):
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={"generation_id": "gen-5", "status": "queued"})
        return httpx.Response(200, json={"status": "done", "outputs": {"image_url": "https://cdn.example.com/a.png"}})

    orchestrator = JobOrchestrator(make_api(handler), settings=test_settings)
    job = await orchestrator.submit_and_wait(STILL_CREATE_PATH, build_still_payload(PASS_ID, "X"))

    assert job.id == "gen-5"
    assert paths == [("POST", "/mma/still/create"), ("GET", "/mma/generations/gen-5")]


@pytest.mark.asyncio
async def test_submission_without_id_is_an_error(make_api, test_settings):
    orchestrator = JobOrchestrator(make_api(lambda r: httpx.Response(200, json={"ok": True})), settings=test_settings)

    with pytest.raises(SubmissionError, match="no id returned"):
        await orchestrator.submit(STILL_CREATE_PATH, build_still_payload(PASS_ID, "X"))
    assert not orchestrator.guard.in_flight(f"{STILL_CREATE_PATH}|run")
