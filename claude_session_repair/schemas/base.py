"""
Shared Pydantic base model for strict validation.

All findings and report models inherit from StrictModel.
"""

from __future__ import annotations

from claude_session_repair.schemas.types import BaseStrictModel


class StrictModel(BaseStrictModel):
    """Operations-layer strict model.

    Inherits from BaseStrictModel (extra='forbid', strict=True, frozen=True).
    """

    pass
