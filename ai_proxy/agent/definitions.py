"""
The agents served by the app, built once at startup.

- chat: a nerdy chat agent for /chat (multi-turn, persisted)
- orchestrator: answers with the pokemon_info tool for /pokemon
- triage: routes /support requests to customer support or escalation control
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, Field

from ai_proxy.common.config import Settings, get_settings

from .agent import Agent, RunContext
from .handoffs import handoff
from .tools import POKEMON_INFO_TOOL

logger = logging.getLogger(__name__)

CHAT_INSTRUCTIONS = (
    "You are a Nerd. You try to steer every conversation towards Star Trek or Dungeons & Dragons. "
    "No matter what."
)

ORCHESTRATOR_INSTRUCTIONS = """
- You have ONE tool: pokemon_info. Use it ONLY if the user asks about a Pokémon.
- For tacos: DO NOT use any tools. Answer with exactly a 3-line haiku (5-7-5).
- For other topics: reply briefly, no tools.
- Never invent tools. Only pokemon_info exists.
"""

CUSTOMER_SUPPORT_INSTRUCTIONS = """
You are a customer support agent in a company that sells very fluffy pillows.
Be friendly, helpful, and concise.
"""

ESCALATION_INSTRUCTIONS = """
You are an escalation control agent that handles negative customer interactions.
If the customer is upset, you will apologize and offer to escalate the issue to a manager.
Be friendly, helpful, reassuring and concise.
"""

TRIAGE_INSTRUCTIONS = """
NEVER answer non-pillow related questions and stop the conversation immediately.
If the question is about pillows, route it to the customer support agent.
If the customer's tone is negative, route it to the escalation control agent.
"""


class EscalationInput(BaseModel):
    reason: str = Field(..., description="Why the customer needs escalation control.")


async def log_escalation(context: RunContext, input_data: EscalationInput | None) -> None:
    # Notifications (email, ticketing) for escalations would go here
    reason = input_data.reason if input_data else None
    logger.info(f"Handoff to Escalation Control Agent from '{context.agent.name}': {reason}")


@dataclass(frozen=True)
class AgentCatalog:
    chat: Agent
    orchestrator: Agent
    triage: Agent


def build_chat_agent(settings: Settings) -> Agent:
    return Agent(
        name="Nerdy Chat Agent",
        instructions=CHAT_INSTRUCTIONS,
        model=settings.llm_model,
        model_settings={"max_tokens": settings.chat_max_tokens},
    )


def build_orchestrator_agent(settings: Settings) -> Agent:
    return Agent(
        name="Orchestrator Agent",
        instructions=ORCHESTRATOR_INSTRUCTIONS,
        model=settings.llm_model,
        tools=[POKEMON_INFO_TOOL],
    )


def build_triage_agent(
    settings: Settings,
    on_escalation: Callable[[RunContext, EscalationInput | None], Any] = log_escalation,
) -> Agent:
    customer_support = Agent(
        name="Customer Support Agent",
        instructions=CUSTOMER_SUPPORT_INSTRUCTIONS,
        model=settings.llm_model,
        handoff_description="Answers questions about pillows.",
    )
    escalation_control = Agent(
        name="Escalation Control Agent",
        instructions=ESCALATION_INSTRUCTIONS,
        model=settings.llm_model,
        handoff_description="Handles upset customers and negative interactions.",
    )
    return Agent(
        name="Triage Agent",
        instructions=TRIAGE_INSTRUCTIONS,
        model=settings.triage_model,
        handoffs=[
            customer_support,
            handoff(escalation_control, input_model=EscalationInput, on_handoff=on_escalation),
        ],
    )


def build_agents(settings: Settings | None = None) -> AgentCatalog:
    settings = settings or get_settings()
    return AgentCatalog(
        chat=build_chat_agent(settings),
        orchestrator=build_orchestrator_agent(settings),
        triage=build_triage_agent(settings),
    )
