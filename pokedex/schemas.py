"""
Pydantic schemas for API responses
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ===== POKEMON SCHEMAS =====

class Pokemon(BaseModel):
    """Public fields of a cached Pokémon record"""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: Optional[str] = None
    height: Optional[int] = None
    weight: Optional[int] = None
    types: List[str] = []
    abilities: List[str] = []
    base_stats: Dict[str, int] = Field(default_factory=dict, alias="baseStats")


# ===== ERROR SCHEMAS =====

class ErrorResponse(BaseModel):
    """Error body returned for 4xx/5xx responses"""
    detail: str
