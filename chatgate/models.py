from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

BackendKind = Literal["ollama", "xinference", "dify"]
Role = Literal["user", "assistant"]


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str = ""
    role: Role
    created_at: float = Field(default_factory=time.time)

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    def as_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatRequest(BaseModel):
    modelType: BackendKind
    model: str
    message: str


class ChatResponse(BaseModel):
    response: str


class OllamaModel(BaseModel):
    name: str
    size: Optional[int] = None
    digest: Optional[str] = None
    modified_at: Optional[str] = None


class SavedModel(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    is_available: bool = False


class ModelsResponse(BaseModel):
    ollama: List[OllamaModel]
    xinference: List[SavedModel]
    dify: List[SavedModel]


def parse_saved_models(raw: Any) -> List[SavedModel]:
    out: List[SavedModel] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("name"), str):
            try:
                out.append(SavedModel.model_validate(item))
            except ValueError:
                continue
    return out
