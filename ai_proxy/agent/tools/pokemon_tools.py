"""
pokemon_info tool for the orchestrator agent.
Answers from a stub by default; with POKEAPI_BASE_URL set it looks the Pokémon up over HTTP.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ai_proxy.common.config import get_settings

from ..tool_registry import Tool

logger = logging.getLogger(__name__)

POKEAPI_TIMEOUT_SECS = 10.0


class PokemonInfoParams(BaseModel):
    pokemon: str = Field(..., min_length=1, description="The name or the ID of a Pokémon.")


async def _lookup(base_url: str, pokemon: str) -> dict[str, Any] | None:
    slug = pokemon.strip().lower().replace(" ", "-")
    async with httpx.AsyncClient(timeout=POKEAPI_TIMEOUT_SECS) as client:
        resp = await client.get(f"{base_url}/pokemon/{slug}")
    if resp.status_code == 404:
        return None
    resp.raise_for_status()
    return resp.json()


async def pokemon_info(context: Any, params: PokemonInfoParams) -> str:
    """Returns what is known about a Pokémon; the model adds details from its own knowledge."""
    logger.info(f"pokemon_info called with input: {params.model_dump()}")
    base_url = get_settings().pokeapi_base_url
    if not base_url:
        return f"{params.pokemon} is a Pokémon. I'll provide more details from my own knowledge."

    data = await _lookup(base_url, params.pokemon)
    if data is None:
        return f"No Pokémon named {params.pokemon!r} was found."
    types = [t["type"]["name"] for t in data.get("types", [])]
    abilities = [a["ability"]["name"] for a in data.get("abilities", [])]
    return (
        f"{data.get('name', params.pokemon)} (#{data.get('id', '?')}) is a Pokémon. "
        f"Types: {', '.join(types) or 'unknown'}. "
        f"Abilities: {', '.join(abilities) or 'unknown'}."
    )


POKEMON_INFO_TOOL = Tool(
    name="pokemon_info",
    description="Get information about a Pokémon by name or ID.",
    execute=pokemon_info,
    params_model=PokemonInfoParams,
)
