"""Agent planner loop: one planner decision and one tool execution per invocation."""

import base64
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from genjobs.errors import PlannerNonComplianceError, ProviderValidationError, StepValidationError
from genjobs.models.job import AWAITING_FEEDBACK, AWAITING_REFINEMENT, COMPLETE, PROCESSING, Job
from genjobs.pipelines.base import PipelineContext, Runner, StepResult, child_result
from genjobs.planner.tools import (
    DELEGATING_ASYNC,
    INLINE,
    PAUSE,
    TERMINAL,
    TOOLS_BY_NAME,
    PlannerContext,
    available_tools,
)
from genjobs.schemas.providers import (
    ARTISAN_QUESTION,
    BRAND_QUESTION,
    CRITIQUE_QUESTION,
    BrandAnalysis,
    CritiqueResult,
)
from genjobs.services.blob_store import blob_key
from genjobs.services.job_store import JobStore
from genjobs.services.llm_client import ToolCall

logger = logging.getLogger(__name__)

AGENT_CONVERSATION = "agent_conversation"
BATCH_REFINE = "batch_refine"
GENERATION_TOOLS = ("generate_image", "generate_image_with_reference")

SYSTEM_PROMPT = """You are a creative director orchestrating image generation tools.

On every turn call exactly one tool. Never answer in plain text; use finish_task to talk to the user.
- Ask a clarification_question when the request is ambiguous.
- Use dispatch_to_artisan_engine to craft a prompt before generating when a reference image is provided.
- After generating several options, use present_image_choice to let the user pick.
- Use creative_process_complete when a generate/critique cycle has produced the final image.
"""


def function_turn(call: ToolCall, response: Dict[str, Any]) -> Dict[str, Any]:
    return {"role": "function", "name": call.name, "call_id": call.id, "response": response}


def last_generated_images(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Images from the most recent generation tool result."""
    for turn in reversed(history):
        if turn.get("role") == "function" and turn.get("name") in GENERATION_TOOLS:
            images = (turn.get("response") or {}).get("images")
            if images:
                return images
    return []


def assemble_creative_result(history: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Group prompt/generate/critique results into iterations for the final report."""
    iterations: List[Dict[str, Any]] = []
    current: Dict[str, Any] = {}

    for turn in history:
        if turn.get("role") != "function":
            continue
        name, response = turn.get("name"), turn.get("response")
        if not name or not response:
            continue

        if name == "dispatch_to_artisan_engine":
            if current:
                iterations.append(current)
            current = {"artisan_result": response}
        elif name in GENERATION_TOOLS:
            key = "refined_generation_result" if "initial_generation_result" in current else "initial_generation_result"
            current[key] = {"tool_name": name, "response": response}
        elif name == "critique_images":
            current["critique_result"] = response

    if current:
        iterations.append(current)
    if not iterations:
        return None

    last = iterations[-1]
    return {
        "is_creative_process": True,
        "iterations": iterations,
        "final_generation_result": last.get("refined_generation_result") or last.get("initial_generation_result"),
    }


class AgentPlannerLoop(Runner):
    """
    Runs agent conversation jobs.

    Each invocation asks the planner for exactly one tool call, appends and
    persists that call to ``history``, then executes it. If the previous
    invocation died between those two points, the unanswered call is executed
    again instead of asking the planner a second time.
    """

    pipeline_type = AGENT_CONVERSATION

    def __init__(self, ctx: PipelineContext, planner_client):
        self.ctx = ctx
        self.planner = planner_client
        self.inline_handlers = {
            "generate_image": self._generate_image,
            "generate_image_with_reference": self._generate_image_with_reference,
            "dispatch_to_brand_analyzer": self._analyze_brand,
            "dispatch_to_artisan_engine": self._artisan_prompt,
            "critique_images": self._critique_images,
        }

    def run(self, job: Job, store: JobStore) -> StepResult:
        context = PlannerContext.from_metadata(job.meta, self.ctx.settings.IMG2IMG_MODELS)
        history = list(job.history or [])

        pending_call = self._unanswered_call(history)
        if pending_call is not None:
            logger.warning(f"Job {job.id} resuming unanswered tool call {pending_call.name}")
            result = self._execute(job, store, context, history, pending_call)
            result.base_version = job.version
            return result

        metadata: Dict[str, Any] = {}
        if context.pending_user_input:
            history.append({"role": "user", "content": context.pending_user_input})
            metadata["pending_user_input"] = None
        if not history:
            raise StepValidationError(f"Job {job.id} has no conversation to plan from")

        tools = available_tools(context)
        response = self.planner.plan(history, SYSTEM_PROMPT, [tool.declaration for tool in tools])
        if not response.tool_calls:
            raise PlannerNonComplianceError("The agent could not decide on a next step.")
        if len(response.tool_calls) > 1:
            logger.warning(
                f"Job {job.id} planner returned {len(response.tool_calls)} tool calls, using the first"
            )

        call = response.tool_calls[0]
        if call.name not in {tool.name for tool in tools}:
            raise StepValidationError(f"Planner chose unavailable tool: {call.name}")
        logger.info(f"Job {job.id} planner chose {call.name}")

        # Persist the decision before acting on it
        history.append({"role": "model", "tool_call": call.model_dump()})
        job = store.update(
            job.id,
            status=PROCESSING,
            history=history,
            metadata=metadata or None,
            expected_version=job.version,
        )

        result = self._execute(job, store, context, history, call)
        result.base_version = job.version
        return result

    def delegate_result(self, parent: Job, child: Job) -> StepResult:
        """Answer the parent's pending delegating call with the child's output."""
        call_id = (parent.meta or {}).get("delegated_call_id", "")
        call_name = (parent.meta or {}).get("delegated_tool", "dispatch_to_refinement_agent")
        result = child_result(child)
        images = [{"url": url} for url in (child.meta or {}).get("results", [])]
        if images:
            result["images"] = images

        history = list(parent.history or [])
        history.append({"role": "function", "name": call_name, "call_id": call_id, "response": result})
        return StepResult(metadata={"delegated_result": result}, history=history, status=PROCESSING)

    def _unanswered_call(self, history: List[Dict[str, Any]]) -> Optional[ToolCall]:
        """The last model call if it never got a result. Terminal calls never do."""
        if not history or history[-1].get("role") != "model":
            return None
        call = ToolCall.model_validate(history[-1]["tool_call"])
        tool = TOOLS_BY_NAME.get(call.name)
        if tool is not None and tool.kind == TERMINAL:
            return None
        return call

    def _execute(
        self,
        job: Job,
        store: JobStore,
        context: PlannerContext,
        history: List[Dict[str, Any]],
        call: ToolCall,
    ) -> StepResult:
        tool = TOOLS_BY_NAME.get(call.name)
        if tool is None:
            raise StepValidationError(f"Unknown tool call: {call.name}")

        if tool.kind == TERMINAL:
            return self._finish(job, context, history, call)
        if tool.kind == PAUSE:
            return self._present_choice(history, call)
        if tool.kind == DELEGATING_ASYNC:
            return self._dispatch_refinement(job, store, history, call)
        if tool.kind == INLINE:
            response, metadata = self.inline_handlers[call.name](job, context, history, call)
            history = history + [function_turn(call, response)]
            return StepResult(metadata=metadata, history=history, status=PROCESSING)
        raise StepValidationError(f"Tool {call.name} has unknown kind {tool.kind}")

    # Terminal and pausing tools

    def _finish(self, job: Job, context: PlannerContext, history, call: ToolCall) -> StepResult:
        args = call.arguments
        response_type = args.get("response_type", "text")
        final_result: Dict[str, Any] = {"response_type": response_type}

        if response_type == "creative_process_complete":
            creative = assemble_creative_result(history)
            if creative:
                final_result.update(creative)
        if args.get("summary"):
            final_result["text"] = args["summary"]
        elif response_type == "creative_process_complete":
            final_result["text"] = "The process is complete, but I couldn't assemble the final report."
        if args.get("follow_up_message"):
            final_result["follow_up_message"] = args["follow_up_message"]

        status = AWAITING_FEEDBACK if response_type == "clarification_question" else COMPLETE
        logger.info(f"Job {job.id} finished with {response_type} -> {status}")
        return StepResult(
            metadata={"final_result": final_result, "iteration_number": context.iteration_number},
            status=status,
            self_invoke=False,
        )

    def _present_choice(self, history, call: ToolCall) -> StepResult:
        images = last_generated_images(history)
        if not images:
            raise StepValidationError("Agent tried to present a choice, but no generated images were found")
        proposal = {"is_image_choice_proposal": True, "summary": call.arguments.get("summary", ""), "images": images}
        return StepResult(
            history=history + [function_turn(call, proposal)],
            status=AWAITING_FEEDBACK,
            self_invoke=False,
        )

    def _dispatch_refinement(self, job: Job, store: JobStore, history, call: ToolCall) -> StepResult:
        existing = [
            c for c in store.find_children(job.id, BATCH_REFINE)
            if (c.meta or {}).get("tool_call_id") == call.id
        ]
        start_jobs = []
        if existing:
            child = existing[-1]
        else:
            images = last_generated_images(history)
            if not images:
                raise StepValidationError("Nothing to refine: no generated images in the conversation")
            child = store.create(
                BATCH_REFINE,
                metadata={
                    "items": [images[0]["url"]],
                    "prompt": call.arguments.get("prompt", ""),
                    "upscale_factor": call.arguments.get("upscale_factor", 1.2),
                    "tool_call_id": call.id,
                    "provider": (job.meta or {}).get("provider", "primary"),
                },
                parent_job_id=job.id,
            )
            start_jobs.append(child)

        logger.info(f"Job {job.id} delegated refinement to job {child.id}")
        return StepResult(
            metadata={"delegated_job_id": child.id, "delegated_call_id": call.id, "delegated_tool": call.name},
            status=AWAITING_REFINEMENT,
            self_invoke=False,
            start_jobs=start_jobs,
        )

    # Inline tools: one provider call each, result appended as a function turn

    def _provider(self, context: PlannerContext):
        return self.ctx.providers.get(context.provider)

    def _images(self, job: Job, result) -> List[Dict[str, Any]]:
        images = []
        for index, candidate in enumerate(result.candidates):
            url = candidate.url
            if not url:
                url = self.ctx.blobs.write(
                    blob_key(job.id, "generate_image", f"image-{index}.png"),
                    base64.b64decode(candidate.base64),
                )
            images.append({"url": url, "description": candidate.description, "seed": candidate.seed})
        return images

    def _generate_image(self, job: Job, context: PlannerContext, history, call: ToolCall):
        params = {k: v for k, v in call.arguments.items() if v is not None}
        params["model_id"] = context.selected_model_id
        result = self._provider(context).generate({}, params)
        return {"images": self._images(job, result)}, {}

    def _generate_image_with_reference(self, job: Job, context: PlannerContext, history, call: ToolCall):
        params = {k: v for k, v in call.arguments.items() if v is not None}
        params["model_id"] = context.selected_model_id
        result = self._provider(context).generate({"reference": context.reference_image.url}, params)
        return {"images": self._images(job, result)}, {}

    def _analyze_brand(self, job: Job, context: PlannerContext, history, call: ToolCall):
        brand_name = call.arguments.get("brand_name", "")
        question = dict(BRAND_QUESTION, context={"brand_name": brand_name})
        answer = self._provider(context).analyze("", question)
        try:
            analysis = BrandAnalysis.model_validate(answer)
        except ValidationError as e:
            raise ProviderValidationError(f"Bad brand analysis: {e}")
        return analysis.model_dump(), {"brand_name": brand_name}

    def _artisan_prompt(self, job: Job, context: PlannerContext, history, call: ToolCall):
        reference = context.reference_image
        question = dict(
            ARTISAN_QUESTION,
            context={
                "user_request_summary": call.arguments.get("user_request_summary", ""),
                "iteration_number": context.iteration_number,
                "is_designer_mode": context.is_designer_mode,
            },
        )
        answer = self._provider(context).analyze(reference.url if reference else "", question)
        if not answer.get("prompt"):
            raise ProviderValidationError("Artisan engine returned no prompt")
        return answer, {}

    def _critique_images(self, job: Job, context: PlannerContext, history, call: ToolCall):
        images = last_generated_images(history)
        if not images:
            raise StepValidationError("Nothing to critique: no generated images in the conversation")
        question = dict(CRITIQUE_QUESTION, context={"reason": call.arguments.get("reason_for_critique", "")})
        answer = self._provider(context).analyze(images[-1]["url"], question)
        try:
            critique = CritiqueResult.model_validate(answer)
        except ValidationError as e:
            raise ProviderValidationError(f"Bad critique: {e}")

        metadata = {}
        if not critique.is_good_enough:
            metadata["iteration_number"] = context.iteration_number + 1
            logger.info(f"Job {job.id} critique rejected, iteration {metadata['iteration_number']}")
        return critique.model_dump(), metadata
