import json

import httpx
import pytest
import respx

from checkmate.facades.replicate import (
    FLUX_MODELS,
    MissingCredentialsError,
    PollFailedError,
    ReplicateFacade,
    SubmissionFailedError,
    TransientUpstreamError,
)
from checkmate.schemas.prediction import JobSpec, JobStatus

BASE_URL = "https://replicate.test"
TOKEN = "r8_test"


def make_job_spec(**overrides) -> JobSpec:
    data = {
        "image": "aGVsbG8=",
        "prompt": "Replace the slogan with neutral copy",
        "model_version": "flux-kontext-pro",
    }
    data.update(overrides)
    return JobSpec(**data)


@pytest.mark.asyncio
@respx.mock
async def test_submit_success():
    route = respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(201, json={"id": "p1", "status": "starting"})
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        job = await facade.submit(make_job_spec())

    assert job.id == "p1"
    assert job.status == JobStatus.QUEUED
    request = route.calls.last.request
    assert request.headers["Authorization"] == f"Token {TOKEN}"
    body = json.loads(request.content)
    assert body["version"] == FLUX_MODELS["flux-kontext-pro"]
    assert body["input"]["input_image"] == "data:image/jpeg;base64,aGVsbG8="
    assert body["input"]["num_outputs"] == 1
    assert body["input"]["negative_prompt"] == ""


@pytest.mark.asyncio
@respx.mock
async def test_submit_keeps_data_url_and_uses_override_token():
    route = respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(201, json={"id": "p2", "status": "processing"})
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, "", BASE_URL)
        job = await facade.submit(
            make_job_spec(image="data:image/png;base64,AAAA", model_version="abc123"),
            api_token="user-token",
        )

    assert job.status == JobStatus.PROCESSING
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Token user-token"
    body = json.loads(request.content)
    assert body["version"] == "abc123"
    assert body["input"]["input_image"] == "data:image/png;base64,AAAA"


@pytest.mark.asyncio
async def test_submit_without_token():
    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, "", BASE_URL)
        with pytest.raises(MissingCredentialsError):
            await facade.submit(make_job_spec())


@pytest.mark.asyncio
@respx.mock
async def test_submit_rejected():
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(413, text="payload size exceeds limit")
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(SubmissionFailedError) as exc_info:
            await facade.submit(make_job_spec())

    assert exc_info.value.status_code == 413
    assert exc_info.value.payload_too_large


@pytest.mark.asyncio
@respx.mock
async def test_submit_malformed_response():
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(201, json={"status": "starting"})
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(SubmissionFailedError):
            await facade.submit(make_job_spec())


@pytest.mark.asyncio
@respx.mock
async def test_submit_overloaded_is_transient():
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(503, text="Service Unavailable")
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(TransientUpstreamError):
            await facade.submit(make_job_spec())


@pytest.mark.asyncio
@respx.mock
async def test_submit_connection_error_is_transient():
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        side_effect=httpx.ConnectError("connection refused")
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(TransientUpstreamError):
            await facade.submit(make_job_spec())


@pytest.mark.asyncio
@respx.mock
async def test_poll_succeeded():
    respx.get(f"{BASE_URL}/v1/predictions/p1").mock(
        return_value=httpx.Response(
            200,
            json={"id": "p1", "status": "succeeded", "output": ["https://x/img.png"]},
        )
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        job = await facade.poll("p1")

    assert job.status == JobStatus.SUCCEEDED
    assert job.output == ["https://x/img.png"]
    assert job.is_terminal


@pytest.mark.asyncio
@respx.mock
async def test_poll_failed_carries_error():
    respx.get(f"{BASE_URL}/v1/predictions/p1").mock(
        return_value=httpx.Response(
            200, json={"id": "p1", "status": "failed", "error": "NSFW content detected"}
        )
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        job = await facade.poll("p1")

    assert job.status == JobStatus.FAILED
    assert job.error_message == "NSFW content detected"


@pytest.mark.asyncio
@respx.mock
async def test_poll_unknown_status_is_preserved():
    respx.get(f"{BASE_URL}/v1/predictions/p1").mock(
        return_value=httpx.Response(200, json={"id": "p1", "status": "paused"})
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        job = await facade.poll("p1")

    assert job.status == "paused"
    assert not job.is_terminal


@pytest.mark.asyncio
@respx.mock
async def test_poll_http_error():
    respx.get(f"{BASE_URL}/v1/predictions/p1").mock(
        return_value=httpx.Response(404, text="not found")
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(PollFailedError) as exc_info:
            await facade.poll("p1")

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b'["x"]', b'"queued"', b"null"])
@respx.mock
async def test_submit_rejects_non_object_body(body):
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(201, content=body)
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(SubmissionFailedError):
            await facade.submit(make_job_spec())


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b'["x"]', b'"queued"', b"null"])
@respx.mock
async def test_poll_rejects_non_object_body(body):
    respx.get(f"{BASE_URL}/v1/predictions/p1").mock(
        return_value=httpx.Response(200, content=body)
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(PollFailedError):
            await facade.poll("p1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{"status": "starting"}, {"id": None, "status": "starting"}, {"id": "", "status": "starting"}],
)
@respx.mock
async def test_submit_rejects_missing_prediction_id(body):
    respx.post(f"{BASE_URL}/v1/predictions").mock(
        return_value=httpx.Response(201, json=body)
    )

    async with httpx.AsyncClient() as client:
        facade = ReplicateFacade(client, TOKEN, BASE_URL)
        with pytest.raises(SubmissionFailedError):
            await facade.submit(make_job_spec())
