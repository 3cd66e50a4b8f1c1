# Tool implementations for the demo agents.
# Each module exports async functions that take (context, params) and return a result.

from .pokemon_tools import PokemonInfoParams, pokemon_info, POKEMON_INFO_TOOL

__all__ = [
    "PokemonInfoParams",
    "pokemon_info",
    "POKEMON_INFO_TOOL",
]
