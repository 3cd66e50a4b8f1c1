"""Tests for the agent run loop with a scripted model (no real API or DB)."""
import asyncio
import json
import threading
import time
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import BaseModel

from ai_proxy.agent import Agent, RunConfig, Tool, handoff, run_agent
from ai_proxy.agent.agent_loop import _sanitize_messages_for_llm
from ai_proxy.errors import (
    HandoffCallbackError,
    InvalidHandoffTarget,
    InvalidToolInput,
    ModelCallError,
    RoundTripBudgetExceeded,
    RunCancelled,
    RunTimeoutError,
    ToolExecutionError,
)
from ai_proxy.llm import ModelTurn

from ..conftest_utils import ScriptedModel, actions, answer, call

CONFIG = RunConfig(max_round_trips=5, model_timeout=5, tool_timeout=5)


class EchoParams(BaseModel):
    text: str


class ReasonInput(BaseModel):
    reason: str


def make_echo_tool(seen: list):
    async def echo(context, params: EchoParams):
        seen.append(params.text)
        return {"echo": params.text}

    return Tool(name="echo", description="Echo text back.", execute=echo, params_model=EchoParams)


def tool_messages(history):
    return [m for m in history if m["role"] == "tool"]


@pytest.mark.asyncio
async def test_run_agent_returns_answer_when_no_tool_calls():
    agent = Agent(name="Helper", instructions="Be helpful.", model="gpt-test")
    model = ScriptedModel(answer("Hello there."))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, [{"role": "user", "content": "Hi"}], config=CONFIG)

    assert result.final_output == "Hello there."
    assert result.history == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello there."},
    ]
    assert result.round_trips == 0
    assert result.last_agent is agent
    assert model.calls[0]["instructions"] == "Be helpful."
    assert model.calls[0]["model"] == "gpt-test"
    assert model.calls[0]["history"] == [{"role": "user", "content": "Hi"}]


@pytest.mark.asyncio
async def test_string_input_becomes_user_message():
    agent = Agent(name="Helper", instructions="Be helpful.", model="gpt-test")
    model = ScriptedModel(answer("ok"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "What is up?", config=CONFIG)
    assert result.history[0] == {"role": "user", "content": "What is up?"}


@pytest.mark.asyncio
async def test_model_settings_passed_to_model():
    agent = Agent(name="Helper", instructions="x", model="gpt-test", model_settings={"max_tokens": 1000})
    model = ScriptedModel(answer("ok"))
    with patch("ai_proxy.llm.complete", new=model):
        await run_agent(agent, "hi", config=CONFIG)
    assert model.calls[0]["model_settings"] == {"max_tokens": 1000}


@pytest.mark.asyncio
async def test_tool_call_executes_and_loops_back_to_model():
    seen = []
    agent = Agent(name="Helper", instructions="Use echo.", model="gpt-test", tools=[make_echo_tool(seen)])
    tc = call("echo", {"text": "ping"}, call_id="call_echo")
    model = ScriptedModel(actions(tc), answer("The tool said ping."))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "Echo ping", config=CONFIG)

    assert seen == ["ping"]
    assert result.final_output == "The tool said ping."
    assert result.round_trips == 1
    assert [m["role"] for m in result.history] == ["user", "assistant", "tool", "assistant"]
    assert result.history[1]["tool_calls"][0]["function"]["name"] == "echo"
    assert result.history[2] == {
        "role": "tool",
        "tool_call_id": "call_echo",
        "content": json.dumps({"echo": "ping"}),
    }
    # The second model call sees the tool result
    assert model.calls[1]["history"][-1]["tool_call_id"] == "call_echo"
    assert model.calls[0]["tool_names"] == ["echo"]


@pytest.mark.asyncio
async def test_history_is_prefix_preserving():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    prior = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "first answer"},
        {"role": "user", "content": "second"},
    ]
    model = ScriptedModel(actions(call("echo", {"text": "a"})), answer("done"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, prior, config=CONFIG)

    assert result.history[: len(prior)] == prior
    assert len(result.history) == len(prior) + 3
    assert len(prior) == 3  # input list is not mutated


@pytest.mark.asyncio
async def test_invalid_tool_input_never_executes_tool():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    model = ScriptedModel(
        actions(call("echo", {"wrong": "field"}, call_id="bad")),
        answer("Sorry, let me fix that."),
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "Echo", config=CONFIG)

    assert seen == []
    assert result.final_output == "Sorry, let me fix that."
    assert isinstance(result.errors[0], InvalidToolInput)
    tool_msg = tool_messages(result.history)[0]
    assert tool_msg["tool_call_id"] == "bad"
    assert "Invalid input for tool 'echo'" in json.loads(tool_msg["content"])["error"]


@pytest.mark.asyncio
async def test_malformed_json_arguments_reported_to_model():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    model = ScriptedModel(actions(call("echo", "{not json")), answer("retrying"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "Echo", config=CONFIG)

    assert seen == []
    assert "Invalid JSON arguments" in json.loads(tool_messages(result.history)[0]["content"])["error"]


@pytest.mark.asyncio
async def test_tool_exception_is_recovered_and_run_continues():
    async def broken(context, params):
        raise RuntimeError("upstream API down")

    tool = Tool(name="broken", description="Always fails.", execute=broken)
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[tool])
    model = ScriptedModel(actions(call("broken")), answer("The tool is unavailable."))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "Try it", config=CONFIG)

    assert result.final_output == "The tool is unavailable."
    assert isinstance(result.errors[0], ToolExecutionError)
    content = json.loads(tool_messages(result.history)[0]["content"])
    assert "upstream API down" in content["error"]


@pytest.mark.asyncio
async def test_unserializable_tool_result_is_recovered():
    async def tags(context, params):
        return {"tags": {"a", "b"}}

    agent = Agent(
        name="Helper", instructions="x", model="gpt-test",
        tools=[Tool(name="tags", description="Returns a set.", execute=tags)],
    )
    model = ScriptedModel(actions(call("tags", call_id="t1")), answer("ok"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "tags?", config=CONFIG)

    assert result.final_output == "ok"
    assert isinstance(result.errors[0], ToolExecutionError)
    msg = tool_messages(result.history)[0]
    assert msg["tool_call_id"] == "t1"
    assert "not JSON serializable" in json.loads(msg["content"])["error"]


@pytest.mark.asyncio
async def test_unknown_tool_reported_to_model():
    agent = Agent(name="Helper", instructions="x", model="gpt-test")
    model = ScriptedModel(actions(call("made_up_tool")), answer("ok"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "hi", config=CONFIG)
    assert "Unknown tool: made_up_tool" in json.loads(tool_messages(result.history)[0]["content"])["error"]


@pytest.mark.asyncio
async def test_sync_tool_runs():
    def add(context, params):
        return str(params["a"] + params["b"])

    tool = Tool(name="add", description="Add a and b.", execute=add)
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[tool])
    model = ScriptedModel(actions(call("add", {"a": 2, "b": 3})), answer("5"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "2+3?", config=CONFIG)
    assert tool_messages(result.history)[0]["content"] == "5"


@pytest.mark.asyncio
async def test_tool_timeout_fails_run():
    async def slow(context, params):
        await asyncio.sleep(1)

    agent = Agent(
        name="Helper", instructions="x", model="gpt-test",
        tools=[Tool(name="slow", description="Slow.", execute=slow)],
    )
    model = ScriptedModel(actions(call("slow")), answer("never"))
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(RunTimeoutError):
            await run_agent(agent, "go", config=RunConfig(tool_timeout=0.01))


@pytest.mark.asyncio
async def test_model_timeout_fails_run():
    async def slow_model(**kwargs):
        await asyncio.sleep(1)

    agent = Agent(name="Helper", instructions="x", model="gpt-test")
    with patch("ai_proxy.llm.complete", new=slow_model):
        with pytest.raises(RunTimeoutError):
            await run_agent(agent, "go", config=RunConfig(model_timeout=0.01))


@pytest.mark.asyncio
async def test_model_call_error_propagates():
    agent = Agent(name="Helper", instructions="x", model="gpt-test")
    model = ScriptedModel(ModelCallError("provider down"))
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(ModelCallError):
            await run_agent(agent, "go", config=CONFIG)


@pytest.mark.asyncio
async def test_unrecognized_turn_kind_fails_run():
    agent = Agent(name="Helper", instructions="x", model="gpt-test")
    model = ScriptedModel(ModelTurn(kind="mystery"))
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(ModelCallError):
            await run_agent(agent, "go", config=CONFIG)


@pytest.mark.asyncio
async def test_round_trip_budget_exceeded():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    model = ScriptedModel(*[actions(call("echo", {"text": str(i)})) for i in range(10)])
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(RoundTripBudgetExceeded):
            await run_agent(agent, "loop forever", config=RunConfig(max_round_trips=3))

    assert len(seen) == 3
    assert len(model.calls) == 4


@pytest.mark.asyncio
async def test_alternating_tools_and_handoffs_bounded_by_budget():
    seen = []
    echo = make_echo_tool(seen)
    agent_b = Agent(name="Agent B", instructions="B", model="gpt-test", tools=[echo])
    agent_a = Agent(name="Agent A", instructions="A", model="gpt-test", tools=[echo], handoffs=[agent_b])
    model = ScriptedModel(
        actions(call("echo", {"text": "1"})),
        actions(call("transfer_to_agent_b")),
        actions(call("echo", {"text": "2"})),
        actions(call("echo", {"text": "3"})),
        answer("never reached"),
    )
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(RoundTripBudgetExceeded):
            await run_agent(agent_a, "go", config=RunConfig(max_round_trips=3))
    assert seen == ["1", "2"]


@pytest.mark.asyncio
async def test_handoff_switches_agent_and_replaces_instructions():
    specialist = Agent(name="Specialist", instructions="You are the specialist.", model="gpt-special")
    triage = Agent(name="Triage", instructions="You route requests.", model="gpt-triage", handoffs=[specialist])
    model = ScriptedModel(
        actions(call("transfer_to_specialist", call_id="h1")),
        answer("Specialist here."),
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "Help me", config=CONFIG)

    assert result.last_agent is specialist
    assert result.final_output == "Specialist here."
    assert model.calls[0]["instructions"].startswith("You route requests.")
    assert model.calls[0]["tool_names"] == ["transfer_to_specialist"]
    assert model.calls[1]["instructions"] == "You are the specialist."
    assert "You route requests." not in model.calls[1]["instructions"]
    assert model.calls[1]["model"] == "gpt-special"
    # user message forwarded; no system messages stored in history
    assert model.calls[1]["history"][0] == {"role": "user", "content": "Help me"}
    assert all(m["role"] != "system" for m in result.history)
    assert json.loads(tool_messages(result.history)[0]["content"]) == {"transferred_to": "Specialist"}


@pytest.mark.asyncio
async def test_handoff_to_undeclared_target_is_rejected():
    on_handoff = AsyncMock()
    declared = Agent(name="Declared", instructions="d", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(declared, on_handoff=on_handoff)],
    )
    model = ScriptedModel(
        actions(call("transfer_to_somewhere_else", call_id="h1")),
        answer("I can only route to Declared."),
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "go", config=CONFIG)

    assert result.last_agent is triage
    on_handoff.assert_not_awaited()
    assert isinstance(result.errors[0], InvalidHandoffTarget)
    content = json.loads(tool_messages(result.history)[0]["content"])
    assert "not a handoff available" in content["error"]
    # model was asked again as the same agent
    assert model.calls[1]["instructions"] == model.calls[0]["instructions"]


@pytest.mark.asyncio
async def test_on_handoff_called_once_before_new_agent_answers():
    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    model = ScriptedModel(
        actions(call("transfer_to_escalation", {"reason": "angry customer"})),
        answer("I'm sorry."),
    )
    seen = []

    async def on_handoff(context, input_data):
        seen.append((context.agent.name, input_data.reason, len(model.calls)))

    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, input_model=ReasonInput, on_handoff=on_handoff)],
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "I'm furious", config=CONFIG)

    assert seen == [("Triage", "angry customer", 1)]
    assert result.last_agent is target


@pytest.mark.asyncio
async def test_handoff_with_invalid_input_does_not_transfer():
    on_handoff = AsyncMock()
    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, input_model=ReasonInput, on_handoff=on_handoff)],
    )
    model = ScriptedModel(actions(call("transfer_to_escalation", {})), answer("ok"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "go", config=CONFIG)

    assert result.last_agent is triage
    on_handoff.assert_not_awaited()
    assert isinstance(result.errors[0], InvalidToolInput)


@pytest.mark.asyncio
async def test_on_handoff_failure_is_isolated_by_default():
    async def on_handoff(context, input_data):
        raise RuntimeError("email server down")

    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, on_handoff=on_handoff)],
    )
    model = ScriptedModel(actions(call("transfer_to_escalation")), answer("handled"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "go", config=CONFIG)

    assert result.last_agent is target
    assert result.final_output == "handled"
    assert isinstance(result.errors[0], HandoffCallbackError)


@pytest.mark.asyncio
async def test_on_handoff_failure_fatal_when_configured():
    def on_handoff(context, input_data):
        raise RuntimeError("email server down")

    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, on_handoff=on_handoff)],
    )
    model = ScriptedModel(actions(call("transfer_to_escalation")), answer("never"))
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(HandoffCallbackError):
            await run_agent(triage, "go", config=RunConfig(fatal_handoff_errors=True))
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_multiple_handoffs_first_wins():
    on_b = AsyncMock()
    on_c = AsyncMock()
    agent_b = Agent(name="Agent B", instructions="b", model="gpt-test")
    agent_c = Agent(name="Agent C", instructions="c", model="gpt-test")
    agent_a = Agent(
        name="Agent A", instructions="a", model="gpt-test",
        handoffs=[handoff(agent_b, on_handoff=on_b), handoff(agent_c, on_handoff=on_c)],
    )
    model = ScriptedModel(
        actions(call("transfer_to_agent_b", call_id="hb"), call("transfer_to_agent_c", call_id="hc")),
        answer("B here"),
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent_a, "go", config=CONFIG)

    assert result.last_agent is agent_b
    on_b.assert_awaited_once()
    on_c.assert_not_awaited()
    msgs = {m["tool_call_id"]: json.loads(m["content"]) for m in tool_messages(result.history)}
    assert msgs["hb"] == {"transferred_to": "Agent B"}
    assert "Multiple handoffs" in msgs["hc"]["error"]


@pytest.mark.asyncio
async def test_tool_and_handoff_in_same_response():
    seen = []
    agent_b = Agent(name="Agent B", instructions="b", model="gpt-test")
    agent_a = Agent(
        name="Agent A", instructions="a", model="gpt-test",
        tools=[make_echo_tool(seen)], handoffs=[agent_b],
    )
    turn = actions(call("echo", {"text": "note"}, call_id="t1"), call("transfer_to_agent_b", call_id="h1"))
    model = ScriptedModel(turn, answer("B here"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent_a, "go", config=CONFIG)

    assert seen == ["note"]
    assert result.last_agent is agent_b
    assert result.round_trips == 1
    assert [m["tool_call_id"] for m in tool_messages(result.history)] == ["t1", "h1"]


@pytest.mark.asyncio
async def test_cancelled_before_model_call():
    agent = Agent(name="Helper", instructions="x", model="gpt-test")
    model = ScriptedModel(answer("never"))
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(RunCancelled):
            await run_agent(agent, "go", config=CONFIG, is_cancelled=lambda: True)
    assert model.calls == []


@pytest.mark.asyncio
async def test_cancelled_between_model_and_tool():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    model = ScriptedModel(actions(call("echo", {"text": "x"})), answer("never"))
    is_cancelled = AsyncMock(side_effect=[False, True])
    with patch("ai_proxy.llm.complete", new=model):
        with pytest.raises(RunCancelled):
            await run_agent(agent, "go", config=CONFIG, is_cancelled=is_cancelled)
    assert seen == []
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_usage_is_accumulated_across_calls():
    seen = []
    agent = Agent(name="Helper", instructions="x", model="gpt-test", tools=[make_echo_tool(seen)])
    model = ScriptedModel(
        actions(call("echo", {"text": "x"}), usage={"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}),
        answer("done", usage={"prompt_tokens": 20, "completion_tokens": 5, "total_tokens": 25}),
    )
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(agent, "go", config=CONFIG)
    assert result.usage == {"prompt_tokens": 30, "completion_tokens": 7, "total_tokens": 37}


def test_sanitize_messages_strips_tool_calls_without_results():
    """A stored chat can hold assistant+tool_calls with no tool results."""
    messages = [
        {"role": "user", "content": "Look up Pikachu"},
        {"role": "assistant", "content": "Looking it up.", "tool_calls": [{"id": "call_abc", "function": {"name": "pokemon_info", "arguments": "{}"}}]},
        {"role": "user", "content": "ok"},
    ]
    out = _sanitize_messages_for_llm(messages)
    assert len(out) == 3
    assert out[0] == {"role": "user", "content": "Look up Pikachu"}
    assert "tool_calls" not in out[1]
    assert out[1]["content"] == "Looking it up."
    assert out[2] == {"role": "user", "content": "ok"}


def test_sanitize_messages_keeps_tool_calls_when_results_present():
    messages = [
        {"role": "user", "content": "Look up Pikachu"},
        {"role": "assistant", "content": None, "tool_calls": [{"id": "call_abc", "function": {"name": "pokemon_info", "arguments": "{}"}}]},
        {"role": "tool", "tool_call_id": "call_abc", "content": "Pikachu is a Pokémon."},
        {"role": "user", "content": "thanks"},
    ]
    out = _sanitize_messages_for_llm(messages)
    assert len(out) == 4
    assert out[1].get("tool_calls") is not None
    assert out[2] == {"role": "tool", "tool_call_id": "call_abc", "content": "Pikachu is a Pokémon."}
    assert out[3] == {"role": "user", "content": "thanks"}


def test_sanitize_messages_drops_system_and_orphan_tool_messages():
    messages = [
        {"role": "system", "content": "old instructions"},
        {"role": "user", "content": "hi"},
        {"role": "tool", "tool_call_id": "orphan", "content": "?"},
        {"role": "assistant", "content": "hello"},
    ]
    out = _sanitize_messages_for_llm(messages)
    assert out == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]


@pytest.mark.asyncio
async def test_sync_on_handoff_runs_off_the_event_loop():
    loop_thread = threading.get_ident()
    seen = []

    def on_handoff(context, input_data):
        seen.append(threading.get_ident())

    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, on_handoff=on_handoff)],
    )
    model = ScriptedModel(actions(call("transfer_to_escalation")), answer("handled"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "go", config=CONFIG)

    assert result.last_agent is target
    assert len(seen) == 1
    assert seen[0] != loop_thread


@pytest.mark.asyncio
async def test_slow_sync_on_handoff_is_bounded_by_timeout():
    def on_handoff(context, input_data):
        time.sleep(0.5)

    target = Agent(name="Escalation", instructions="e", model="gpt-test")
    triage = Agent(
        name="Triage", instructions="t", model="gpt-test",
        handoffs=[handoff(target, on_handoff=on_handoff)],
    )
    model = ScriptedModel(actions(call("transfer_to_escalation")), answer("handled"))
    with patch("ai_proxy.llm.complete", new=model):
        result = await run_agent(triage, "go", config=RunConfig(tool_timeout=0.05))

    assert result.final_output == "handled"
    assert result.last_agent is target
    assert isinstance(result.errors[0], HandoffCallbackError)
