"""Generation provider request/response schemas."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class Candidate(BaseModel):
    """One generated output. Providers return either a URL or inline base64."""

    url: Optional[str] = None
    base64: Optional[str] = None
    seed: Optional[int] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _has_payload(self):
        if not self.url and not self.base64:
            raise ValueError("candidate needs a url or base64 payload")
        return self


class GenerateResult(BaseModel):
    """Output of Generate."""

    candidates: List[Candidate] = Field(min_length=1)


class ScoreResult(BaseModel):
    """Output of Score."""

    action: Literal["retry", "select"]
    best_index: int = 0
    reasoning: str = ""


class SubjectRegion(BaseModel):
    """Bounding box of the subject on a 0-1000 scale: [top, left, bottom, right]."""

    box: List[float] = Field(min_length=4, max_length=4)

    @model_validator(mode="after")
    def _ordered(self):
        top, left, bottom, right = self.box
        if not (0 <= top < bottom <= 1000 and 0 <= left < right <= 1000):
            raise ValueError(f"bounding box out of range: {self.box}")
        return self


class CompletenessResult(BaseModel):
    """Output of the outfit completeness analysis."""

    is_outfit_complete: bool
    missing_items: List[str] = []
    reasoning: str = ""


class BrandAnalysis(BaseModel):
    """Output of the brand analysis question."""

    brand_name: str
    visual_identity: Dict[str, Any] = {}
    summary: str = ""


class CritiqueResult(BaseModel):
    """Output of the image critique question."""

    is_good_enough: bool
    critique: str = ""


# Question schemas sent with Analyze
SUBJECT_REGION_QUESTION: Dict[str, Any] = {
    "name": "subject_region",
    "instructions": "Return the bounding box of the person as [top, left, bottom, right] on a 0-1000 scale.",
    "schema": SubjectRegion.model_json_schema(),
}

COMPLETENESS_QUESTION: Dict[str, Any] = {
    "name": "outfit_completeness",
    "instructions": (
        "Decide whether the person wears a complete outfit given the garment type that was applied. "
        "List missing items from: upper_body, lower_body, shoes."
    ),
    "schema": CompletenessResult.model_json_schema(),
}

BRAND_QUESTION: Dict[str, Any] = {
    "name": "brand_analysis",
    "instructions": "Describe the visual identity of the named brand: palette, typography, photography style.",
    "schema": BrandAnalysis.model_json_schema(),
}

CRITIQUE_QUESTION: Dict[str, Any] = {
    "name": "image_critique",
    "instructions": "Judge whether the generated images satisfy the brief. Be strict.",
    "schema": CritiqueResult.model_json_schema(),
}

ARTISAN_QUESTION: Dict[str, Any] = {
    "name": "artisan_prompt",
    "instructions": (
        "Write a detailed image generation prompt for the request. "
        "Use the reference image, if given, for style and composition."
    ),
    "schema": {
        "type": "object",
        "properties": {"prompt": {"type": "string"}, "rationale": {"type": "string"}},
        "required": ["prompt"],
    },
}
