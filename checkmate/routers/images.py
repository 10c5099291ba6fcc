import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette import status

from checkmate.facades.replicate import (
    EmptyOutputError,
    JobFailedError,
    JobTimeoutError,
    MissingCredentialsError,
    PollFailedError,
    PredictionError,
    SubmissionFailedError,
    TransientUpstreamError,
    UnrecognizedStatusError,
)
from checkmate.prompts import build_fix_image_prompt
from checkmate.routers.dependencies import get_client_ip, quota_exceeded_response
from checkmate.schemas.analysis import AnalysisTableItem
from checkmate.schemas.prediction import JobSpec, PredictionJob
from checkmate.services.poller import PredictionPoller
from checkmate.services.usage import UsageLimiter

log = logging.getLogger(__name__)


class FixImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base64_image: str = Field(..., min_length=1, alias="base64Image")
    prompt: str = Field(..., min_length=1)
    negative_prompt: str = Field("", alias="negativePrompt")
    model: Optional[str] = Field(None, description="flux-kontext-pro, flux-kontext-max or a version id")
    issue: Optional[AnalysisTableItem] = None
    replicate_api_token: Optional[str] = Field(None, alias="replicateApiToken")


class SubmitPredictionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base64_image: str = Field(..., min_length=1, alias="base64Image")
    prompt: str = Field(..., min_length=1)
    negative_prompt: str = Field("", alias="negativePrompt")
    flux_model_version_id: str = Field(..., min_length=1, alias="fluxModelVersionId")
    replicate_api_token: Optional[str] = Field(None, alias="replicateApiToken")


def prediction_http_error(error: PredictionError) -> HTTPException:
    if isinstance(error, MissingCredentialsError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image generation is not configured. Add your own Replicate API token.",
        )
    if isinstance(error, SubmissionFailedError):
        if error.payload_too_large:
            return HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail="Image too large. Please use a smaller image.",
            )
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to start image generation: {error}",
        )
    if isinstance(error, PollFailedError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to check generation status: {error}",
        )
    if isinstance(error, TransientUpstreamError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image service temporarily unavailable. Please try again later.",
        )
    if isinstance(error, JobTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(error))
    if isinstance(error, (JobFailedError, EmptyOutputError, UnrecognizedStatusError)):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Image generation failed: {error}",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Image generation failed: {error}",
    )


def _prediction_payload(job: PredictionJob) -> dict:
    return {
        "id": job.id,
        "status": str(getattr(job.status, "value", job.status)),
        "output": job.output,
        "error": job.error_message,
    }


def make_images_router(
    poller: PredictionPoller, usage_limiter: UsageLimiter, default_model: str
):
    router = APIRouter(prefix="/api", tags=["images"])

    @router.post("/generate-fix-image", summary="Generate a compliant version of an image")
    async def generate_fix_image(request: Request, body: FixImageRequest):
        if not body.prompt.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail="Prompt is required"
            )
        ip = get_client_ip(request)
        # Callers with their own token are neither gated nor charged.
        metered = not body.replicate_api_token
        if metered:
            quota = await usage_limiter.check_quota(ip)
            if not quota.allowed:
                return quota_exceeded_response(usage_limiter.per_caller_limit)

        job_spec = JobSpec(
            image=body.base64_image,
            prompt=build_fix_image_prompt(body.prompt, body.issue),
            negative_prompt=body.negative_prompt,
            model_version=body.model or default_model,
        )
        try:
            job = await poller.submit(job_spec, api_token=body.replicate_api_token)
            image_url = await poller.wait(job.id, api_token=body.replicate_api_token)
        except PredictionError as e:
            log.error(f"Fix image generation failed: {e}")
            raise prediction_http_error(e)

        response = {"imageUrl": image_url, "predictionId": job.id}
        if metered:
            await usage_limiter.record_usage(ip)
            usage = await usage_limiter.get_usage(ip)
            response["_usage"] = {"remaining": usage.remaining, "limit": usage.limit}
        return response

    @router.post("/flux/predictions", summary="Start an image prediction")
    async def submit_prediction(body: SubmitPredictionRequest):
        job_spec = JobSpec(
            image=body.base64_image,
            prompt=body.prompt,
            negative_prompt=body.negative_prompt,
            model_version=body.flux_model_version_id,
        )
        try:
            job = await poller.submit(job_spec, api_token=body.replicate_api_token)
        except PredictionError as e:
            raise prediction_http_error(e)
        return _prediction_payload(job)

    @router.get("/flux/predictions/{prediction_id}", summary="Read a prediction's status")
    async def get_prediction(
        prediction_id: str,
        replicate_api_token: Optional[str] = Header(None, alias="X-Replicate-Api-Token"),
    ):
        try:
            job = await poller.poll(prediction_id, api_token=replicate_api_token)
        except PredictionError as e:
            raise prediction_http_error(e)
        return _prediction_payload(job)

    return router
