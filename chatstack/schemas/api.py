"""Request and response models of the HTTP API."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class HealthCheckStatus(str, Enum):
    OK = "ok"


class HealthCheckResponse(BaseModel):
    status: HealthCheckStatus = Field(..., description="Service status.")
    version: str = Field(..., description="Application version.")
    chat_loaded: bool = Field(False, description="Whether a chat session is ready for prompts.")
    model_path: str | None = Field(None, description="Path of the selected model, if any.")


class LoadModelRequest(BaseModel):
    """Full bring-up request; exactly one of ``model_path`` and ``model_id``."""

    model_path: str | None = Field(None, description="Local path of the model weights.")
    model_id: str | None = Field(None, description="Catalog id of a downloaded model.")

    @model_validator(mode="after")
    def _exactly_one_source(self) -> LoadModelRequest:
        if (self.model_path is None) == (self.model_id is None):
            raise ValueError("Provide exactly one of 'model_path' or 'model_id'")
        return self


class ModelPathRequest(BaseModel):
    model_path: str = Field(..., min_length=1, description="Local path of the model weights.")


class PromptRequest(BaseModel):
    message: str = Field(..., description="User message to send to the chat session.")


class ResetRequest(BaseModel):
    mark_loaded: bool = Field(True, description="Mark the fresh session loaded.")


class DraftRequest(BaseModel):
    prompt: str = Field(..., description="Current draft text of the next message.")


class PromptResponse(BaseModel):
    response: str = Field(..., description="Response text; partial when the prompt was stopped.")
    state: dict[str, Any] = Field(..., description="Runtime snapshot after the prompt settled.")


class ModelsResponse(BaseModel):
    object: str = "list"
    data: list[dict[str, Any]] = Field(default_factory=list)
