"""Tests for the agent planner loop."""

from genjobs.models.job import AWAITING_FEEDBACK, AWAITING_REFINEMENT, COMPLETE, FAILED, PENDING, PROCESSING
from genjobs.pipelines.registry import start_job
from genjobs.planner.loop import assemble_creative_result
from genjobs.planner.tools import PlannerContext, available_tools
from genjobs.services.llm_client import PlannerResponse

AGENT = "agent_conversation"


def _start(engine, store, metadata=None, history=None):
    job = store.create(AGENT, metadata=metadata or {}, history=history)
    assert start_job(engine.registry, engine.dispatcher, job) is True
    return job


def test_finish_on_first_turn(engine, store, dispatcher, planner):
    """A planner that finishes at once completes the job in one invocation."""
    planner.say("finish_task", response_type="text", summary="Hello! What should we make?")
    job = _start(engine, store, {"pending_user_input": "hi there"})

    invocations = dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert invocations == 1
    assert job.status == COMPLETE
    assert len(job.history) == 2
    assert job.history[0] == {"role": "user", "content": "hi there"}
    assert job.history[1]["tool_call"]["name"] == "finish_task"
    assert job.meta["final_result"] == {"response_type": "text", "text": "Hello! What should we make?"}
    assert job.meta["pending_user_input"] is None
    assert dispatcher.dispatched(job.id) == 1


def test_clarification_waits_for_feedback(engine, store, dispatcher, planner):
    planner.say("finish_task", response_type="clarification_question", summary="Which style?")
    planner.say("finish_task", response_type="text", summary="Got it.")
    job = _start(engine, store, {"pending_user_input": "make a logo"})

    dispatcher.drain(engine.worker.invoke)
    assert store.get(job.id).status == AWAITING_FEEDBACK

    engine.worker.invoke(job.id, {"pending_user_input": "minimalist"})

    job = store.get(job.id)
    assert job.status == COMPLETE
    assert [turn["role"] for turn in job.history] == ["user", "model", "user", "model"]
    # The unanswered clarification is replayed to the planner as plain text, not re-executed
    assert len(planner.requests) == 2
    assert planner.requests[1]["history"][2] == {"role": "user", "content": "minimalist"}


def test_tools_follow_capabilities(test_settings):
    plain = PlannerContext.from_metadata({}, test_settings.IMG2IMG_MODELS)
    names = {tool.name for tool in available_tools(plain)}
    assert "generate_image" in names
    assert "generate_image_with_reference" not in names
    assert "critique_images" not in names

    rich = PlannerContext.from_metadata(
        {
            "user_provided_assets": [{"type": "image", "url": "blob://ref.png"}],
            "selected_model_id": test_settings.IMG2IMG_MODELS[0],
            "is_designer_mode": True,
        },
        test_settings.IMG2IMG_MODELS,
    )
    names = {tool.name for tool in available_tools(rich)}
    assert "generate_image_with_reference" in names
    assert "critique_images" in names

    # A reference image alone is not enough without an img2img model
    no_model = PlannerContext.from_metadata(
        {"user_provided_assets": [{"type": "image", "url": "blob://ref.png"}], "selected_model_id": "text-only"},
        test_settings.IMG2IMG_MODELS,
    )
    assert "generate_image_with_reference" not in {tool.name for tool in available_tools(no_model)}


def test_planner_sees_only_available_tools(engine, store, dispatcher, planner):
    planner.say("finish_task", response_type="text", summary="ok")
    _start(engine, store, {"pending_user_input": "hi"})

    dispatcher.drain(engine.worker.invoke)

    offered = planner.requests[0]["tools"]
    assert "finish_task" in offered
    assert "critique_images" not in offered


def test_no_tool_call_fails_the_job(engine, store, dispatcher, planner):
    planner.script.append(PlannerResponse(text="I think a cat would be nice."))
    job = _start(engine, store, {"pending_user_input": "draw something"})

    dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert job.status == FAILED
    assert job.error_message == "The agent could not decide on a next step."


def test_unavailable_tool_fails_the_job(engine, store, dispatcher, planner):
    planner.say("critique_images", reason_for_critique="check")
    job = _start(engine, store, {"pending_user_input": "draw something"})

    dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert job.status == FAILED
    assert "critique_images" in job.error_message


def test_only_the_first_of_several_calls_runs(engine, store, dispatcher, planner, primary):
    first = PlannerResponse(tool_calls=[
        {"id": "a", "name": "finish_task", "arguments": {"response_type": "text", "summary": "done"}},
        {"id": "b", "name": "generate_image", "arguments": {"prompt": "x"}},
    ])
    planner.script.append(first)
    job = _start(engine, store, {"pending_user_input": "hi"})

    dispatcher.drain(engine.worker.invoke)

    assert store.get(job.id).status == COMPLETE
    assert primary.count("generate") == 0


def test_generate_then_present_choice(engine, store, dispatcher, planner, primary, blobs):
    planner.say("generate_image", prompt="a red dress on a runway", number_of_images=2)
    planner.say("present_image_choice", summary="Which one do you like?")
    job = _start(engine, store, {"pending_user_input": "a red dress", "selected_model_id": "flux"})

    dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert job.status == AWAITING_FEEDBACK
    assert [turn["role"] for turn in job.history] == ["user", "model", "function", "model", "function"]
    generated = job.history[2]["response"]["images"]
    assert len(generated) == 2
    assert blobs.read(generated[0]["url"]).startswith(b"\x89PNG")
    proposal = job.history[4]["response"]
    assert proposal["is_image_choice_proposal"] is True
    assert proposal["images"] == generated

    params = primary.calls[0][2]
    assert params["prompt"] == "a red dress on a runway"
    assert params["model_id"] == "flux"

    planner.say("finish_task", response_type="creative_process_complete", summary="Here it is.")
    engine.worker.invoke(job.id, {"pending_user_input": "the first one"})

    job = store.get(job.id)
    assert job.status == COMPLETE
    final = job.meta["final_result"]
    assert final["is_creative_process"] is True
    assert final["final_generation_result"]["tool_name"] == "generate_image"
    assert final["text"] == "Here it is."


def test_resumes_unanswered_tool_call(engine, store, dispatcher, planner, primary):
    """A call persisted by a crashed invocation is executed without asking the planner again."""
    history = [
        {"role": "user", "content": "a cat"},
        {"role": "model", "tool_call": {"id": "call_9", "name": "generate_image", "arguments": {"prompt": "a cat"}}},
    ]
    job = store.create(AGENT, history=history)
    store.update(job.id, status=PROCESSING)

    engine.worker.invoke(job.id)

    job = store.get(job.id)
    assert planner.requests == []
    assert primary.count("generate") == 1
    assert job.status == PROCESSING
    assert job.history[-1]["role"] == "function"
    assert job.history[-1]["call_id"] == "call_9"
    assert dispatcher.dispatched(job.id) == 1


def test_critique_rejection_bumps_iteration(engine, store, dispatcher, planner, primary):
    primary.answers["image_critique"] = {"is_good_enough": False, "critique": "Too dark"}
    planner.say("generate_image", prompt="night city")
    planner.say("critique_images", reason_for_critique="quality gate")
    planner.say("finish_task", response_type="text", summary="Trying again later")
    job = _start(engine, store, {"pending_user_input": "night city", "is_designer_mode": True})

    dispatcher.drain(engine.worker.invoke)

    job = store.get(job.id)
    assert job.status == COMPLETE
    assert job.meta["iteration_number"] == 2
    assert job.history[4]["response"]["critique"] == "Too dark"


def test_refinement_is_delegated_to_batch_refine(engine, store, dispatcher, planner, primary):
    planner.say("generate_image", prompt="a vase")
    planner.say("dispatch_to_refinement_agent", call_id="refine_1", prompt="sharper", upscale_factor=1.4)
    job = _start(engine, store, {"pending_user_input": "a vase"})

    dispatcher.drain(engine.worker.invoke)

    parent = store.get(job.id)
    assert parent.status == AWAITING_REFINEMENT
    (child,) = store.find_children(job.id, "batch_refine")
    assert child.status == PENDING
    assert child.meta["upscale_factor"] == 1.4
    assert child.meta["items"] == [parent.history[2]["response"]["images"][0]["url"]]
    assert parent.meta["delegated_job_id"] == child.id

    # Intake claims the slot-limited child
    assert f"claimed {child.id}" in engine.watchdog.run_once()
    dispatcher.drain(engine.worker.invoke)
    assert store.get(child.id).status == COMPLETE

    planner.say("finish_task", response_type="text", summary="Refined.")
    actions = engine.watchdog.run_once()
    assert f"propagated {child.id} -> {job.id}" in actions
    dispatcher.drain(engine.worker.invoke)

    parent = store.get(job.id)
    assert parent.status == COMPLETE
    answer = parent.history[4]
    assert answer["role"] == "function"
    assert answer["call_id"] == "refine_1"
    assert answer["response"]["images"][0]["url"] == store.get(child.id).meta["final_image_url"]


def test_assemble_creative_result_groups_iterations():
    history = [
        {"role": "function", "name": "dispatch_to_artisan_engine", "call_id": "1", "response": {"prompt": "p1"}},
        {"role": "function", "name": "generate_image", "call_id": "2", "response": {"images": [{"url": "u1"}]}},
        {"role": "function", "name": "critique_images", "call_id": "3", "response": {"is_good_enough": False}},
        {"role": "function", "name": "dispatch_to_artisan_engine", "call_id": "4", "response": {"prompt": "p2"}},
        {"role": "function", "name": "generate_image", "call_id": "5", "response": {"images": [{"url": "u2"}]}},
    ]

    result = assemble_creative_result(history)

    assert len(result["iterations"]) == 2
    assert result["iterations"][0]["critique_result"] == {"is_good_enough": False}
    assert result["final_generation_result"]["response"] == {"images": [{"url": "u2"}]}
    assert assemble_creative_result([{"role": "user", "content": "hi"}]) is None
