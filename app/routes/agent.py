# agent.py: Chat and agent endpoints (chat, pokemon, support).

import logging
from typing import Any

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel, ConfigDict, Field

import ai_proxy as ap

logger = logging.getLogger(__name__)

agent_router = APIRouter(tags=["agent"])


class EchoRequest(BaseModel):
    message: Any = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., description="New user message")
    chat_id: str | None = Field(default=None, alias="chatId", description="Existing chat; omit to start one")


class PokemonRequest(BaseModel):
    pokemon: str = Field(..., description="Name or ID of a Pokémon")


class SupportRequest(BaseModel):
    message: str = Field(..., description="Customer message")


@agent_router.get("/")
async def get_root():
    return {"message": "Running"}


@agent_router.post("/echo")
async def post_echo(request: EchoRequest = Body(...)):
    return {"echo": request.message}


@agent_router.post("/chat")
async def post_chat(http_request: Request, request: ChatRequest = Body(...)):
    """
    Run one chat turn. Creates a chat when chatId is absent; otherwise continues it.
    The full history (including intermediate tool messages) is saved only after the run succeeds.
    """
    client = ap.common.get_client()
    agent = http_request.app.state.agents.chat
    user_message = {"role": "user", "content": request.prompt}

    if request.chat_id is None:
        # Nothing is stored until the first run succeeds
        result = await ap.agent.run_agent(agent, [user_message], is_cancelled=http_request.is_disconnected)
        conversation = await ap.agent.conversations.create_conversation(client, result.history)
        return {"result": result.final_output, "chatId": conversation.id}

    chat_id = request.chat_id
    async with ap.agent.conversation_lock(chat_id):
        conversation = await ap.agent.conversations.load_conversation(client, chat_id)
        result = await ap.agent.run_agent(
            agent,
            conversation.history + [user_message],
            is_cancelled=http_request.is_disconnected,
        )
        conversation.history = result.history
        await ap.agent.conversations.save_conversation(client, conversation)

    return {"result": result.final_output, "chatId": chat_id}


@agent_router.get("/chat/{chat_id}")
async def get_chat(chat_id: str):
    """Get a chat's stored history."""
    conversation = await ap.agent.conversations.load_conversation(ap.common.get_client(), chat_id)
    return {"chatId": conversation.id, "history": conversation.history}


@agent_router.delete("/chat/{chat_id}")
async def delete_chat(chat_id: str):
    async with ap.agent.conversation_lock(chat_id):
        await ap.agent.conversations.delete_conversation(ap.common.get_client(), chat_id)
    return {"ok": True}


@agent_router.post("/pokemon")
async def post_pokemon(http_request: Request, request: PokemonRequest = Body(...)):
    """Single-turn orchestrator run with the pokemon_info tool."""
    result = await ap.agent.run_agent(
        http_request.app.state.agents.orchestrator,
        f"Get info about this Pokémon: {request.pokemon}",
        is_cancelled=http_request.is_disconnected,
    )
    return {"result": result.final_output}


@agent_router.post("/support")
async def post_support(http_request: Request, request: SupportRequest = Body(...)):
    """Single-turn triage run; may hand off to customer support or escalation control."""
    result = await ap.agent.run_agent(
        http_request.app.state.agents.triage,
        request.message,
        is_cancelled=http_request.is_disconnected,
    )
    logger.info(f"Support request answered by '{result.last_agent.name}'")
    return {"answer": result.final_output}
