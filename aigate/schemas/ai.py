"""Request bodies for the AI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageInput(BaseModel):
    """Inline image; `data` may be raw base64 or a data URL."""

    mime_type: str = Field("image/png", alias="mimeType")
    data: str = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("data")
    @classmethod
    def _strip_data_url(cls, v: str) -> str:
        if v.startswith("data:") and "," in v:
            return v.split(",", 1)[1]
        return v


class ChatRequest(BaseModel):
    prompt: str = Field(..., max_length=100_000)
    system: str | None = None
    model: str | None = None
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_output_tokens: int | None = Field(None, ge=1, le=32_768, alias="maxOutputTokens")
    image: ImageInput | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Prompt is required")
        return v


class JsonRequest(ChatRequest):
    """Same shape as chat; the reply must be a JSON document."""


class ImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=10_000)
    aspect_ratio: str = Field("1:1", alias="aspectRatio", pattern=r"^\d{1,2}:\d{1,2}$")

    model_config = ConfigDict(populate_by_name=True)
