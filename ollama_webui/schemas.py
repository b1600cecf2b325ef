from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class ConversationCreate(BaseModel):
    title: str = Field(min_length=1)
    model: str = Field(min_length=1)


class ConversationUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    model: Optional[str] = Field(default=None, min_length=1)


class MessageCreate(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)


class ModelPull(BaseModel):
    name: str = Field(min_length=1)


class SettingUpdate(BaseModel):
    value: Any

    @field_validator("value")
    @classmethod
    def _require_value(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("value must not be null")
        return value
