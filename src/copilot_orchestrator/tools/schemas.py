"""Pydantic schemas for the built-in interactive tools."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from copilot_orchestrator.domain.models import WireModel


class CollectInputsField(WireModel):
    key: str = Field(min_length=1)
    label: str
    # text, number, date, select, textarea, boolean; clients may render others.
    type: str = "text"
    required: bool = False
    placeholder: str | None = None
    options: list[str] | None = None
    default_value: Any = None


class CollectInputsInput(WireModel):
    """Form the client renders to ask the user for structured values."""

    title: str | None = None
    description: str | None = None
    fields: list[CollectInputsField] = Field(min_length=1)
