"""Planner tool declarations and the capability predicates that gate them."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

# Tool kinds
TERMINAL = "terminal"
INLINE = "inline"
DELEGATING_ASYNC = "delegating_async"
PAUSE = "pause"


class Asset(BaseModel):
    type: str
    url: str


class PlannerContext(BaseModel):
    """Typed view of an agent job's metadata, evaluated once per turn."""

    model_config = ConfigDict(extra="ignore")

    user_provided_assets: List[Asset] = []
    selected_model_id: Optional[str] = None
    model_supports_img2img: bool = False
    is_designer_mode: bool = False
    iteration_number: int = 1
    pending_user_input: Optional[str] = None
    provider: str = "primary"

    @classmethod
    def from_metadata(cls, metadata: Dict[str, Any], img2img_models: List[str]) -> "PlannerContext":
        ctx = cls.model_validate(metadata or {})
        ctx.model_supports_img2img = bool(ctx.selected_model_id) and ctx.selected_model_id in img2img_models
        return ctx

    @property
    def reference_image(self) -> Optional[Asset]:
        for asset in self.user_provided_assets:
            if asset.type == "image":
                return asset
        return None


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


@dataclass
class ToolSpec:
    name: str
    declaration: Dict[str, Any]
    kind: str
    predicate: Callable[[PlannerContext], bool] = lambda ctx: True


def has_reference_image(ctx: PlannerContext) -> bool:
    return ctx.reference_image is not None


def supports_reference_generation(ctx: PlannerContext) -> bool:
    return has_reference_image(ctx) and ctx.model_supports_img2img


def in_designer_mode(ctx: PlannerContext) -> bool:
    return ctx.is_designer_mode


TOOLS: List[ToolSpec] = [
    ToolSpec(
        "generate_image",
        _function(
            "generate_image",
            "Generates images based on a given TEXT-ONLY prompt and various parameters.",
            {
                "prompt": {"type": "string", "description": "The detailed, final prompt to be used for image generation."},
                "size": {"type": "string", "description": "The desired image dimensions or aspect ratio."},
                "number_of_images": {"type": "number", "description": "The number of images to generate."},
                "negative_prompt": {"type": "string", "description": "A description of what to avoid in the image."},
                "seed": {"type": "number", "description": "A seed for deterministic generation."},
            },
            ["prompt"],
        ),
        INLINE,
    ),
    ToolSpec(
        "generate_image_with_reference",
        _function(
            "generate_image_with_reference",
            "Generates an image using a user-provided reference image and a text prompt. "
            "Only use this if the user has uploaded an image.",
            {
                "prompt": {"type": "string", "description": "What to change or the scene for the reference image."},
                "aspect_ratio": {"type": "string", "description": "The desired aspect ratio, e.g., '1:1', '16:9'."},
            },
            ["prompt"],
        ),
        INLINE,
        supports_reference_generation,
    ),
    ToolSpec(
        "dispatch_to_brand_analyzer",
        _function(
            "dispatch_to_brand_analyzer",
            "Analyzes a brand's visual identity. Use this when the user asks to analyze a brand "
            "or generate content inspired by a brand.",
            {"brand_name": {"type": "string", "description": "The name of the brand to analyze."}},
            ["brand_name"],
        ),
        INLINE,
    ),
    ToolSpec(
        "dispatch_to_artisan_engine",
        _function(
            "dispatch_to_artisan_engine",
            "Generates or refines a detailed image prompt. This is the correct first step if the user "
            "provides a reference image.",
            {"user_request_summary": {"type": "string", "description": "A brief summary of the user's request."}},
            ["user_request_summary"],
        ),
        INLINE,
    ),
    ToolSpec(
        "critique_images",
        _function(
            "critique_images",
            "Invokes the Art Director to critique generated images. Only call this after 'generate_image'.",
            {"reason_for_critique": {"type": "string", "description": "Why the critique is necessary."}},
            ["reason_for_critique"],
        ),
        INLINE,
        in_designer_mode,
    ),
    ToolSpec(
        "dispatch_to_refinement_agent",
        _function(
            "dispatch_to_refinement_agent",
            "When the user asks to refine, improve, or upscale the most recent image, call this tool.",
            {
                "prompt": {"type": "string", "description": "The user's instructions for refinement."},
                "upscale_factor": {
                    "type": "number",
                    "description": "1.2 for 'refine', 1.4 for 'upscale', 2.0 for 'improve'.",
                },
            },
            ["prompt", "upscale_factor"],
        ),
        DELEGATING_ASYNC,
    ),
    ToolSpec(
        "present_image_choice",
        _function(
            "present_image_choice",
            "When you have generated multiple images and need the user to choose one, call this tool.",
            {"summary": {"type": "string", "description": "The question to ask the user."}},
            ["summary"],
        ),
        PAUSE,
    ),
    ToolSpec(
        "finish_task",
        _function(
            "finish_task",
            "Call this to respond to the user.",
            {
                "response_type": {
                    "type": "string",
                    "enum": ["clarification_question", "creative_process_complete", "text"],
                    "description": "The type of response to send.",
                },
                "summary": {"type": "string", "description": "The message to send to the user."},
                "follow_up_message": {"type": "string", "description": "A helpful follow-up message."},
            },
            ["response_type", "summary"],
        ),
        TERMINAL,
    ),
]

TOOLS_BY_NAME: Dict[str, ToolSpec] = {tool.name: tool for tool in TOOLS}


def available_tools(ctx: PlannerContext) -> List[ToolSpec]:
    """Tools whose capability predicate holds for this turn."""
    return [tool for tool in TOOLS if tool.predicate(ctx)]
