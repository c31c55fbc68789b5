"""
Pokédex - tiered Pokémon cache in front of PokeAPI.
"""
