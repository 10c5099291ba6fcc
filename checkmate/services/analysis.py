import asyncio
import base64
import binascii
import logging
from typing import List, Optional, Sequence

from google import genai
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field

from checkmate.prompts import (
    AI_DETECTION_PROMPT,
    POLICY_GUIDE,
    build_analysis_prompt,
    build_comprehensive_fix_prompt,
    build_fix_prompt,
)
from checkmate.schemas.analysis import (
    AIDetectionResult,
    AnalysisResult,
    AnalysisTableItem,
    parse_ai_detection,
    parse_analysis_response,
)
from checkmate.services.retry import RetryPolicy

log = logging.getLogger(__name__)

IMAGE_MODEL = "gemini-2.5-flash-image"


class InvalidAnalysisRequestError(Exception):
    pass


class EmptyModelResponseError(Exception):
    pass


class GenerateImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base64_image: Optional[str] = Field(None, alias="base64Image")
    prompt: str = ""
    mime_type: str = Field("image/png", alias="mimeType")


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    base64_media_data: Optional[str] = Field(None, alias="base64MediaData")
    mime_type: Optional[str] = Field(None, alias="mimeType")
    user_description: Optional[str] = Field(None, alias="userDescription")
    user_cta: Optional[str] = Field(None, alias="userCta")
    selected_exclusion_tags: List[str] = Field(default_factory=list, alias="selectedExclusionTags")
    custom_exclusions: Optional[str] = Field(None, alias="customExclusions")
    post_intent: Optional[str] = Field(None, alias="postIntent")

    @property
    def has_media(self) -> bool:
        return bool(self.base64_media_data) and bool(self.mime_type)


def decode_media(data: str) -> bytes:
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidAnalysisRequestError("Media data is not valid base64") from e


class AnalysisService:
    def __init__(
        self,
        client: genai.Client,
        analysis_model: str,
        detection_model: str,
        fix_prompt_model: str,
        retry_policy: Optional[RetryPolicy] = None,
        policy_guide: str = POLICY_GUIDE,
        image_model: str = IMAGE_MODEL,
    ):
        self.client = client
        self.analysis_model = analysis_model
        self.detection_model = detection_model
        self.fix_prompt_model = fix_prompt_model
        self.retry_policy = retry_policy or RetryPolicy()
        self.policy_guide = policy_guide
        self.image_model = image_model

    async def _generate(
        self, model: str, parts: List[types.Part], config: types.GenerateContentConfig
    ) -> Optional[str]:
        response = await self.retry_policy.run(
            lambda: self.client.aio.models.generate_content(
                model=model, contents=parts, config=config
            )
        )
        return response.text

    async def detect_ai_generation(
        self, media: bytes, mime_type: str
    ) -> Optional[AIDetectionResult]:
        try:
            text = await self._generate(
                self.detection_model,
                [
                    types.Part.from_text(text=AI_DETECTION_PROMPT),
                    types.Part.from_bytes(data=media, mime_type=mime_type),
                ],
                types.GenerateContentConfig(
                    response_mime_type="application/json",
                    temperature=0.1,
                    top_p=0.8,
                    top_k=20,
                ),
            )
        except Exception as e:
            log.warning(f"AI-generation detection failed: {e}")
            return None
        return parse_ai_detection(text)

    async def analyze(self, request: AnalyzeRequest) -> AnalysisResult:
        if not request.has_media and not request.user_description and not request.user_cta:
            raise InvalidAnalysisRequestError("No media or text provided for analysis.")

        mime_type = request.mime_type or ""
        prompt = build_analysis_prompt(
            self.policy_guide,
            has_media=request.has_media,
            has_description=bool(request.user_description),
            has_cta=bool(request.user_cta),
            is_video=mime_type.startswith("video/"),
            exclusion_tags=request.selected_exclusion_tags,
            custom_exclusions=request.custom_exclusions,
            post_intent=request.post_intent,
        )
        parts = [types.Part.from_text(text=prompt)]
        media = None
        if request.has_media:
            media = decode_media(request.base64_media_data)
            parts.append(types.Part.from_bytes(data=media, mime_type=mime_type))
        if request.user_description:
            parts.append(
                types.Part.from_text(text=f"User-provided Description: {request.user_description}")
            )
        if request.user_cta:
            parts.append(
                types.Part.from_text(text=f"User-provided Call to Action: {request.user_cta}")
            )
        if request.post_intent and request.post_intent.strip():
            parts.append(types.Part.from_text(text=f"Post Intent/Goal: {request.post_intent}"))

        analysis_call = self._generate(
            self.analysis_model,
            parts,
            types.GenerateContentConfig(
                response_mime_type="application/json",
                temperature=0.1,
                top_p=0.8,
                top_k=30,
            ),
        )
        if media is not None and mime_type.startswith("image/"):
            text, detection = await asyncio.gather(
                analysis_call, self.detect_ai_generation(media, mime_type)
            )
        else:
            text, detection = await analysis_call, None

        if not text:
            raise EmptyModelResponseError("Empty response from Gemini API")
        result = parse_analysis_response(text)
        if detection is not None:
            result.ai_detection = detection
        log.info(
            f"Analysis complete: severity={result.overall_severity} "
            f"issues={len(result.issues_table)} excluded={len(result.excluded_items_table)}"
        )
        return result

    async def _fix_prompt(self, prompt: str) -> str:
        text = await self._generate(
            self.fix_prompt_model,
            [types.Part.from_text(text=prompt)],
            types.GenerateContentConfig(temperature=0.2, top_p=0.8, top_k=30),
        )
        result = (text or "").strip()
        if not result:
            raise EmptyModelResponseError("No fix prompt generated")
        return result

    async def generate_fix_prompt(self, issue: AnalysisTableItem) -> str:
        return await self._fix_prompt(build_fix_prompt(issue))

    async def generate_comprehensive_fix_prompt(
        self, issues: Sequence[AnalysisTableItem]
    ) -> str:
        if not issues:
            raise InvalidAnalysisRequestError("No issues provided")
        return await self._fix_prompt(build_comprehensive_fix_prompt(issues))

    async def generate_image(self, request: GenerateImageRequest) -> str:
        """
        Generates or edits an image from a text instruction and an optional
        source image. Returns the first image part as a data URL.
        """
        if not request.prompt.strip():
            raise InvalidAnalysisRequestError("Prompt is required")

        parts = [types.Part.from_text(text=request.prompt)]
        if request.base64_image and request.base64_image.strip():
            source = decode_media(request.base64_image)
            if not source:
                raise InvalidAnalysisRequestError("Invalid source image data")
            parts.append(types.Part.from_bytes(data=source, mime_type=request.mime_type))

        config = types.GenerateContentConfig(
            temperature=0.4,
            top_p=0.9,
            top_k=40,
            response_modalities=["IMAGE"],
        )
        response = await self.retry_policy.run(
            lambda: self.client.aio.models.generate_content(
                model=self.image_model, contents=parts, config=config
            )
        )

        candidates = response.candidates or []
        content = candidates[0].content if candidates else None
        if content is None or not content.parts:
            raise EmptyModelResponseError(
                "Invalid response structure from image generation API"
            )
        for part in content.parts:
            inline = part.inline_data
            if inline is not None and inline.data:
                encoded = base64.b64encode(inline.data).decode("ascii")
                return f"data:{inline.mime_type or 'image/png'};base64,{encoded}"
        raise EmptyModelResponseError(
            "No image data found in response. The model may have returned only text."
        )


def make_analysis_service(
    client: genai.Client,
    analysis_model: str,
    detection_model: str,
    fix_prompt_model: str,
    retry_policy: RetryPolicy,
    image_model: str = IMAGE_MODEL,
) -> AnalysisService:
    return AnalysisService(
        client=client,
        analysis_model=analysis_model,
        detection_model=detection_model,
        fix_prompt_model=fix_prompt_model,
        retry_policy=retry_policy,
        image_model=image_model,
    )
