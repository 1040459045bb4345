"""Playground schemas for the streaming generation endpoint.

Request fields accept the camelCase names used by browser clients as well as
their snake_case equivalents.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

StreamMessageType = Literal["connected", "token", "structured", "parse_error", "complete", "error"]


class StreamParameters(BaseModel):
    """Sampling parameters. Bounds are checked by the AI client, not here."""

    model_config = ConfigDict(populate_by_name=True)

    temperature: float = 0.7
    max_tokens: int = Field(1000, alias="maxTokens")
    top_p: float = Field(1.0, alias="topP")
    frequency_penalty: float = Field(0.0, alias="frequencyPenalty")
    presence_penalty: float = Field(0.0, alias="presencePenalty")


class StructuredOutputConfig(BaseModel):
    """Ask for the final content to be parsed as structured data."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    format: Literal["json", "xml", "yaml"] | None = None
    json_schema: str | dict[str, Any] | None = Field(None, alias="schema")


class StreamRequest(BaseModel):
    """Request to stream a generation."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    system_prompt: str | None = Field(None, alias="systemPrompt")
    model: str
    parameters: StreamParameters = Field(default_factory=StreamParameters)
    structured_output: StructuredOutputConfig | None = Field(None, alias="structuredOutput")
    trace_id: str | None = Field(None, alias="traceId")
    prompt_id: str | None = Field(None, alias="promptId")
    session_id: str | None = Field(None, alias="sessionId")


class StreamMessage(BaseModel):
    """One server-sent message on the stream."""

    type: StreamMessageType
    trace_id: str | None = Field(None, serialization_alias="traceId")
    data: dict[str, Any] = Field(default_factory=dict)
