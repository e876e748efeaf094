"""
Shared type definitions for schemas.

Layering:
- This module provides FOUNDATION types (BaseStrictModel, PermissiveModel, PathStr)
- records.py, findings.py and report.py build on top of these
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

import pydantic

# ==============================================================================
# Base Strict Model (Foundation)
# ==============================================================================


class BaseStrictModel(pydantic.BaseModel):
    """
    Foundation strict model for report and findings schemas.

    Uses extra='forbid' to reject unknown fields - any field not modeled
    causes immediate validation failure (fail-fast).
    """

    model_config = pydantic.ConfigDict(
        extra='forbid',  # Reject unknown fields (fail-fast)
        strict=True,  # Strict type coercion
        frozen=True,  # Immutable after creation
    )


# ==============================================================================
# Permissive Model (Foundation)
# ==============================================================================


class PermissiveModel(pydantic.BaseModel):
    """
    Foundation permissive model for session log content.

    Symmetry with BaseStrictModel:
    - BaseStrictModel: extra='forbid' (rejects unknown fields)
    - PermissiveModel: extra='allow' (accepts unknown fields)

    Session logs are written by Claude Code, not by us. Content blocks carry
    fields we never inspect (cache_control, signature, citations...), and a
    rewritten record must keep every one of them, so content blocks accept
    and re-emit unknown keys.
    """

    model_config = pydantic.ConfigDict(
        extra='allow',  # Accept unknown fields (round-trip fidelity)
        strict=True,  # Strict type coercion for known fields
        frozen=True,  # Immutable after creation
    )

    def get_extra_fields(self) -> dict[str, object]:
        """Get extra fields captured by this permissive model."""
        return dict(self.__pydantic_extra__) if self.__pydantic_extra__ else {}


# ==============================================================================
# Primitive Types
# ==============================================================================

type JsonDatetime = Annotated[datetime, pydantic.Field(strict=False)]
"""Pydantic-enhanced datetime for JSON serialization (allows string->datetime conversion)."""

type PathStr = str
"""A filesystem path (file or directory) as a string."""
