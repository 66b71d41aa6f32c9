"""End-to-end tests of the turn state machine with scripted backends."""
import pytest

from consensus_engine.agent.experts import (
    ARCHITECT,
    FLASH_GENERALIST,
    IMAGE_GENERATOR,
    PRO_REASONER,
)
from consensus_engine.agent.orchestrator import (
    GENERIC_FAILURE_MESSAGE,
    InvalidTransitionError,
    Orchestrator,
    TurnCallbacks,
)
from consensus_engine.config import settings
from consensus_engine.models.schemas import (
    Domain,
    TurnStage,
    UserPreferences,
    WorkerStatus,
)
from consensus_engine.services.usage import estimate_tokens
from consensus_engine.tools.judge import NO_VALID_RESPONSES

from conftest import (
    EventLog,
    FakeLLM,
    FakeMedia,
    RateLimited,
    make_orchestrator,
    scripted_llm,
)

ALL_STAGES = [
    TurnStage.FRAMING,
    TurnStage.ROUTING,
    TurnStage.GATHERING,
    TurnStage.JUDGING,
    TurnStage.CRITICIZING,
    TurnStage.COMPLETE,
]


def _callbacks(log: EventLog) -> TurnCallbacks:
    return TurnCallbacks(
        on_stage_change=log.recorder("stage"),
        on_experts_selected=log.recorder("experts"),
        on_worker_update=log.recorder("workers"),
        on_synthesis_chunk=log.recorder("chunk"),
        on_turn_update=log.recorder("turn"),
        on_complete=log.recorder("complete"),
        on_error=log.recorder("error"),
    )


async def _run(orchestrator, prompt="Explain CRDTs", history=(), preferences=None, log=None):
    turn = Orchestrator.create_turn(prompt, preferences=preferences)
    callbacks = _callbacks(log) if log else None
    return await orchestrator.run(turn, history=history, callbacks=callbacks)


class BrokenWorkers:
    async def run(self, *args, **kwargs):
        raise RuntimeError("executor crashed")


@pytest.mark.asyncio
async def test_full_turn_walks_every_stage_in_order():
    llm = scripted_llm()
    log = EventLog()

    turn = await _run(make_orchestrator(llm), log=log)

    assert [e[1] for e in log.of("stage")] == ALL_STAGES
    assert turn.step == TurnStage.COMPLETE
    assert turn.framing_profile.domain == Domain.SCIENCE
    assert turn.selected_experts == [FLASH_GENERALIST, PRO_REASONER]
    assert [r.status for r in turn.worker_results] == [WorkerStatus.SUCCESS, WorkerStatus.SUCCESS]
    assert turn.consensus_content == "Confidence: High\n\nThe answer."
    assert turn.critic_content == "Looks sound."
    assert turn.completed_at is not None
    assert turn.error is None


@pytest.mark.asyncio
async def test_callbacks_report_experts_workers_and_chunks():
    llm = scripted_llm(fragments=["Confidence: Medium\n\n", "A ", "B"])
    log = EventLog()

    turn = await _run(make_orchestrator(llm), log=log)

    assert log.of("experts") == [("experts", [FLASH_GENERALIST, PRO_REASONER])]
    assert len(log.of("workers")) == 2
    assert [e[1] for e in log.of("chunk")] == ["Confidence: Medium\n\n", "A ", "B"]
    assert log.of("complete") == [("complete", turn)]
    assert log.of("error") == []
    # every stage change is followed by a turn update for persistence
    assert len(log.of("turn")) >= len(ALL_STAGES) + 2


@pytest.mark.asyncio
async def test_total_tokens_sum_workers_judge_and_critic():
    llm = scripted_llm(critique="Fine.")

    turn = await _run(make_orchestrator(llm))

    worker_tokens = sum(r.estimated_tokens for r in turn.worker_results)
    expected = worker_tokens + estimate_tokens(turn.consensus_content) + estimate_tokens("Fine.")
    assert turn.total_tokens == expected


@pytest.mark.asyncio
async def test_draw_a_red_bicycle_produces_image_and_mentions_it():
    llm = scripted_llm(
        routing={"selectedIds": ["gemini-image", "flash-generalist"], "reasoning": "Drawing request."},
        fragments=["Confidence: High\n\n", "The image is shown in the Gemini Image panel."],
    )
    media = FakeMedia()

    turn = await _run(make_orchestrator(llm, media=media), prompt="Draw a red bicycle")

    image_result = turn.worker_results[0]
    assert image_result.expert == IMAGE_GENERATOR
    assert image_result.status == WorkerStatus.SUCCESS
    assert image_result.images
    assert media.poll_count == 0
    judge_prompt = llm.calls_of("stream")[0]["prompt"]
    assert "image(s) generated" in judge_prompt
    assert "Gemini Image" in turn.consensus_content
    assert turn.step == TurnStage.COMPLETE


@pytest.mark.asyncio
async def test_partial_failure_still_completes():
    llm = scripted_llm(
        routing={"selectedIds": ["flash-generalist", "pro-reasoner", "architect"], "reasoning": ""},
        replies={settings.fast_model_id: [RateLimited("429 resource exhausted")]},
    )

    turn = await _run(make_orchestrator(llm))

    assert [r.expert for r in turn.worker_results] == [FLASH_GENERALIST, PRO_REASONER, ARCHITECT]
    assert [r.status for r in turn.worker_results] == [
        WorkerStatus.ERROR, WorkerStatus.SUCCESS, WorkerStatus.SUCCESS,
    ]
    assert turn.worker_results[0].attempts == 5
    judge_prompt = llm.calls_of("stream")[0]["prompt"]
    assert FLASH_GENERALIST.name not in judge_prompt
    assert PRO_REASONER.name in judge_prompt
    assert turn.step == TurnStage.COMPLETE


@pytest.mark.asyncio
async def test_all_workers_failing_yields_low_confidence_answer():
    llm = scripted_llm(replies={
        settings.fast_model_id: [ValueError("down")],
        settings.pro_model_id: [ValueError("down")],
    })

    turn = await _run(make_orchestrator(llm))

    assert turn.step == TurnStage.COMPLETE
    assert turn.consensus_content == NO_VALID_RESPONSES
    assert llm.calls_of("stream") == []


@pytest.mark.asyncio
async def test_framing_and_routing_failures_use_defaults():
    llm = FakeLLM(structured={"FramingProfile": ValueError("x"), "RoutingDecision": ValueError("y")})

    turn = await _run(make_orchestrator(llm))

    assert turn.framing_profile.domain == Domain.MIXED
    assert turn.selected_experts == [FLASH_GENERALIST, PRO_REASONER]
    assert turn.step == TurnStage.COMPLETE


@pytest.mark.asyncio
async def test_unexpected_failure_moves_turn_to_error():
    llm = scripted_llm()
    log = EventLog()

    turn = await _run(make_orchestrator(llm, workers=BrokenWorkers()), log=log)

    assert turn.step == TurnStage.ERROR
    assert turn.error == GENERIC_FAILURE_MESSAGE
    assert "executor crashed" not in turn.error
    assert log.of("stage")[-1] == ("stage", TurnStage.ERROR)
    assert log.of("error") == [("error", GENERIC_FAILURE_MESSAGE)]
    assert log.of("complete") == []


@pytest.mark.asyncio
async def test_failing_caller_callback_fails_the_turn():
    llm = scripted_llm()

    async def explode(_stage):
        raise RuntimeError("socket closed")

    turn = Orchestrator.create_turn("hi")
    result = await make_orchestrator(llm).run(turn, callbacks=TurnCallbacks(on_stage_change=explode))

    assert result.step == TurnStage.ERROR
    assert result.error == GENERIC_FAILURE_MESSAGE


@pytest.mark.asyncio
async def test_failing_worker_update_callback_fails_the_turn():
    llm = scripted_llm()
    log = EventLog()

    async def explode(_results):
        raise RuntimeError("socket closed")

    callbacks = _callbacks(log)
    callbacks.on_worker_update = explode
    turn = Orchestrator.create_turn("hi")
    result = await make_orchestrator(llm).run(turn, callbacks=callbacks)

    assert result.step == TurnStage.ERROR
    assert result.error == GENERIC_FAILURE_MESSAGE
    assert log.of("complete") == []
    assert log.of("error") == [("error", GENERIC_FAILURE_MESSAGE)]
    assert llm.calls_of("stream") == []


@pytest.mark.asyncio
async def test_turn_cannot_be_run_twice():
    llm = scripted_llm()
    orchestrator = make_orchestrator(llm)
    turn = Orchestrator.create_turn("hi")
    await orchestrator.run(turn)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.run(turn)


@pytest.mark.parametrize(
    "current, target",
    [
        (TurnStage.JUDGING, TurnStage.ROUTING),
        (TurnStage.GATHERING, TurnStage.GATHERING),
        (TurnStage.COMPLETE, TurnStage.ERROR),
        (TurnStage.ERROR, TurnStage.COMPLETE),
    ],
)
def test_backward_or_terminal_transitions_are_rejected(current, target):
    with pytest.raises(InvalidTransitionError):
        Orchestrator._check_transition(current, target)


@pytest.mark.asyncio
async def test_history_context_uses_completed_turns_only():
    llm = scripted_llm()
    orchestrator = make_orchestrator(llm)
    done = Orchestrator.create_turn("What is Raft?")
    await orchestrator.run(done)
    pending = Orchestrator.create_turn("Still running question")

    await _run(make_orchestrator(llm), prompt="And Paxos?", history=[done, pending])

    judge_prompt = llm.calls_of("stream")[-1]["prompt"]
    assert "User: What is Raft?" in judge_prompt
    assert "Still running question" not in judge_prompt


@pytest.mark.asyncio
async def test_preferences_are_snapshotted_at_turn_creation():
    prefs = UserPreferences(persona="Pirate", style="Salty")
    turn = Orchestrator.create_turn("hi", preferences=prefs)
    prefs.persona = "Accountant"

    llm = scripted_llm()
    await make_orchestrator(llm).run(turn)

    worker_prompt = llm.calls_of("complete")[0]["prompt"]
    assert "Act as Pirate" in worker_prompt
    assert turn.preferences_at_time.persona == "Pirate"
