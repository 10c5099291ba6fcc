from typing import List, Optional, Sequence

from checkmate.schemas.analysis import AnalysisTableItem
from checkmate.utils.bounding_box import describe_location

POLICY_GUIDE = """
Meta Content Policy Detection Guide (abridged)
- Personal attributes: do not assert or imply a viewer's race, religion, health,
  financial status, sexual orientation or other personal attributes.
- Health and wellness: no unrealistic outcomes, before/after imagery or
  negative self-perception to promote diet, weight loss or cosmetic products.
- Financial claims: no guaranteed returns, get-rich-quick or misleading
  income claims.
- Adult content: no nudity, implied sexual activity or excessive skin focus.
- Sensational content: no shocking, gory or fear-inducing imagery.
- Restricted goods: tobacco, weapons, drugs, alcohol and gambling need the
  matching authorisation or are prohibited outright.
- Misleading practices: no fake buttons, false urgency or clickbait.
- Text quality: avoid excessive capitalisation and misleading punctuation.
""".strip()

RESPONSE_SHAPE = """
{
  "overallAssessment": "string",
  "overallSeverity": "Compliant | Low Risk | Medium Risk | High Risk",
  "recommendationsFeedback": "string",
  "issuesTable": [{"id": "string", "sourceContext": "primaryImage | videoFrame | descriptionText | ctaText",
    "identifiedContent": "string", "issueDescription": "string", "recommendation": "string",
    "severity": "High | Medium | Low",
    "boundingBox": {"x_min": 0.0, "y_min": 0.0, "x_max": 1.0, "y_max": 1.0} | null,
    "timestamp": "number | null", "captionText": "string | null"}],
  "excludedItemsTable": [{"id": "string", "sourceContext": "string", "identifiedContent": "string",
    "matchedRule": "string", "aiNote": "string", "boundingBox": "object | null"}],
  "summaryForCopy": "string"
}
""".strip()

AI_DETECTION_PROMPT = """Analyze this image and determine if it appears to be AI-generated.

Consider unnatural textures, inconsistent lighting or shadows, anatomical
distortions, garbled text, impossible backgrounds and overly smooth surfaces.

Respond in this exact JSON format:
{"isAIGenerated": true/false, "confidence": 0-100, "reasoning": "Brief explanation"}

Confidence: 0-30 likely real, 31-60 uncertain, 61-85 likely AI, 86-100 almost certainly AI."""


def build_analysis_prompt(
    policy_guide: str,
    has_media: bool,
    has_description: bool,
    has_cta: bool,
    is_video: bool = False,
    exclusion_tags: Optional[Sequence[str]] = None,
    custom_exclusions: Optional[str] = None,
    post_intent: Optional[str] = None,
) -> str:
    materials: List[str] = []
    if is_video:
        materials.append(
            "Media: A video file. Flag specific moments with timestamps and on-screen captions."
        )
    elif has_media:
        materials.append("Media: An image file.")
    else:
        materials.append("Media: No media provided. Analyze text only.")
    if has_description:
        materials.append("User-Provided Text: An accompanying description.")
    if has_cta:
        materials.append("User-Provided Call to Action (CTA): A call to action text.")
    if post_intent and post_intent.strip():
        materials.append("Post Intent/Goal: The intended purpose of this content.")
    provided = "\n".join(f"{i}. {m}" for i, m in enumerate(materials, start=1))

    exclusion_rules = ""
    if exclusion_tags:
        exclusion_rules += f"- Predefined Tags to Exclude: {', '.join(exclusion_tags)}\n"
    if custom_exclusions and custom_exclusions.strip():
        exclusion_rules += (
            "- Custom Exclusions (one rule per line):\n" f"{custom_exclusions.strip()}\n"
        )
    if exclusion_rules:
        exclusion_section = (
            "Content matching these rules goes ONLY into \"excludedItemsTable\" "
            "and never into \"issuesTable\":\n" + exclusion_rules
        )
    else:
        exclusion_section = 'No exclusion rules provided. "excludedItemsTable" MUST be an empty array.'

    intent_hint = ""
    if post_intent and post_intent.strip():
        intent_hint = "Consider the stated post intent when giving recommendations.\n"

    return (
        "You are an expert content policy analyst for Meta's advertising guidelines.\n"
        "Use simple, clear, direct language and **bold** problematic keywords.\n\n"
        f"Provided Materials for Analysis:\n{provided}\n\n"
        f"Policy Guide:\n---\n{policy_guide}\n---\n\n"
        f"Exclusion Rules:\n{exclusion_section}\n\n"
        f"{intent_hint}"
        "Bounding boxes are normalized to 0.0-1.0 with (0,0) at the top-left and are "
        "only given for locatable elements of the primary image.\n"
        "Return a single raw JSON object (no code fences) shaped like:\n"
        f"{RESPONSE_SHAPE}\n"
    )


def _issue_location(issue: AnalysisTableItem) -> str:
    if issue.bounding_box is None:
        return ""
    return describe_location(issue.bounding_box)


def build_fix_prompt(issue: AnalysisTableItem) -> str:
    location = _issue_location(issue)
    location_line = f"**Location:** {location}\n" if location else ""
    return (
        "You turn content policy violations into image editing instructions that keep "
        "the post's message while making it compliant.\n\n"
        f"**Identified Content:** {issue.identified_content}\n"
        f"**Issue Description:** {issue.issue_description}\n"
        f"**Recommendation:** {issue.recommendation}\n"
        f"**Source:** {issue.source_context or 'Unknown'}\n"
        f"{location_line}\n"
        "Suggest REPLACEMENT content rather than removal, mention the location when "
        "given, and keep it under 200 characters.\n\n"
        "Your editing instruction (plain text, no JSON):"
    )


def build_comprehensive_fix_prompt(issues: Sequence[AnalysisTableItem]) -> str:
    lines = []
    for index, issue in enumerate(issues, start=1):
        line = (
            f"{index}. **{issue.identified_content}**: {issue.issue_description} "
            f"| Recommendation: {issue.recommendation}"
        )
        location = _issue_location(issue)
        if location:
            line += f" | Location: {location}"
        lines.append(line)
    return (
        "You turn several content policy violations found in one image into a single "
        "editing instruction that fixes all of them while keeping the visual impact.\n\n"
        + "\n".join(lines)
        + "\n\nHandle the most severe violations first, replace rather than remove, and "
        "join the fixes into one flowing instruction.\n\n"
        "Your comprehensive editing instruction (plain text, no JSON):"
    )


def build_fix_image_prompt(instruction: str, issue: Optional[AnalysisTableItem] = None) -> str:
    instruction = instruction.strip()
    if issue is None:
        return instruction
    location = _issue_location(issue)
    if location and location not in instruction:
        return f"{instruction} (in the {location})"
    return instruction
