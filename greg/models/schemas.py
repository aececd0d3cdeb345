from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["system", "user", "assistant"]


# --- Requests ---


class ChatMessage(BaseModel):
    role: Role
    content: str


class Personality(BaseModel):
    """Style knobs supplied by the settings collaborator; partial objects are merged with defaults."""

    tone: Literal["professional", "friendly", "direct"] = "professional"
    verbosity: Literal["minimal", "balanced", "detailed"] = "balanced"
    guidance: Literal["neutral", "coach"] = "neutral"
    playfulness: Literal["none", "light"] = "none"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model: str = Field(min_length=1)
    messages: list[ChatMessage]
    custom_instructions: str | None = Field(default=None, alias="customInstructions")
    personality: Personality | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    continuation: bool = False
    allow_auto_continue: bool | None = Field(default=None, alias="allowAutoContinue")

    @property
    def conversation(self) -> list[ChatMessage]:
        """Non-system turns; the system prompt is synthesized per request."""
        return [m for m in self.messages if m.role != "system"]


# --- Responses ---


class HealthResponse(BaseModel):
    status: str
    service: str
