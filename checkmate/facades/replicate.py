import logging
from typing import Optional

import httpx

from checkmate.schemas.prediction import JobSpec, PredictionJob

log = logging.getLogger(__name__)

FLUX_MODELS = {
    "flux-kontext-pro": "64734fe9bb527757ee720f64e35cf8266a8f48449f6ee7722fb2dec26a7a0476",
    "flux-kontext-max": "0b9c317b23e79a9a0d8b9602ff4d04030d433055927fb7c4b91c44234a6818c4",
}

TRANSIENT_STATUS_CODES = {502, 503, 504, 529}


class PredictionError(Exception):
    """Base class for everything that can go wrong while driving a prediction."""


class MissingCredentialsError(PredictionError):
    pass


class SubmissionFailedError(PredictionError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def payload_too_large(self) -> bool:
        return self.status_code == 413


class PollFailedError(PredictionError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(PredictionError):
    pass


class JobFailedError(PredictionError):
    pass


class EmptyOutputError(PredictionError):
    pass


class UnrecognizedStatusError(PredictionError):
    pass


class JobTimeoutError(PredictionError):
    pass


def resolve_model_version(model: str) -> str:
    return FLUX_MODELS.get(model, model)


def _is_transient_response(resp: httpx.Response) -> bool:
    if resp.status_code in TRANSIENT_STATUS_CODES:
        return True
    body = resp.text.lower()
    return resp.status_code >= 500 and ("overloaded" in body or "unavailable" in body)


class ReplicateFacade:
    """
    Thin client for the Replicate predictions API. One call, one round trip.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_token: str,
        base_url: str = "https://api.replicate.com",
    ):
        self.http_client = http_client
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")

    def _headers(self, api_token: Optional[str]) -> dict:
        token = api_token or self.api_token
        if not token:
            raise MissingCredentialsError("Replicate API token is required")
        return {"Authorization": f"Token {token}", "Content-Type": "application/json"}

    async def submit(
        self, job_spec: JobSpec, api_token: Optional[str] = None
    ) -> PredictionJob:
        image = job_spec.image
        if not image.startswith("data:"):
            image = f"data:image/jpeg;base64,{image}"
        payload = {
            "version": resolve_model_version(job_spec.model_version),
            "input": {
                "input_image": image,
                "prompt": job_spec.prompt,
                "negative_prompt": job_spec.negative_prompt,
                "num_outputs": 1,
            },
        }
        try:
            resp = await self.http_client.post(
                f"{self.base_url}/v1/predictions",
                json=payload,
                headers=self._headers(api_token),
            )
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Replicate unreachable: {e}") from e

        if _is_transient_response(resp):
            raise TransientUpstreamError(
                f"Replicate unavailable ({resp.status_code}): {resp.text}"
            )
        if resp.status_code not in (200, 201):
            log.error(f"Replicate API error {resp.status_code}: {resp.text}")
            raise SubmissionFailedError(
                f"Replicate API error: {resp.text}", status_code=resp.status_code
            )
        try:
            job = PredictionJob.from_upstream(resp.json())
        except (ValueError, KeyError) as e:
            raise SubmissionFailedError(f"Malformed submission response: {e}") from e
        log.info(f"Prediction submitted: id={job.id} status={job.status}")
        return job

    async def poll(self, job_id: str, api_token: Optional[str] = None) -> PredictionJob:
        try:
            resp = await self.http_client.get(
                f"{self.base_url}/v1/predictions/{job_id}",
                headers=self._headers(api_token),
            )
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Replicate unreachable: {e}") from e

        if _is_transient_response(resp):
            raise TransientUpstreamError(
                f"Replicate unavailable ({resp.status_code}): {resp.text}"
            )
        if resp.status_code != 200:
            log.error(f"Replicate API polling error {resp.status_code}: {resp.text}")
            raise PollFailedError(
                f"Replicate API polling error: {resp.text}",
                status_code=resp.status_code,
            )
        try:
            return PredictionJob.from_upstream(resp.json())
        except (ValueError, KeyError) as e:
            raise PollFailedError(f"Malformed status response: {e}") from e


def make_replicate_facade(
    http_client: httpx.AsyncClient, api_token: str, base_url: str
) -> ReplicateFacade:
    return ReplicateFacade(http_client=http_client, api_token=api_token, base_url=base_url)
