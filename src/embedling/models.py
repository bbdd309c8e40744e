import typing as t

from pydantic import BaseModel, ConfigDict, Field

EmbeddingModel = t.Literal["nomic-embed-text-v1", "nomic-embed-text-v1.5"]
TaskType = t.Literal["search_document", "search_query", "clustering", "classification"]
Embedding = list[float]

EMBEDDING_MODELS: tuple[str, ...] = t.get_args(EmbeddingModel)
TASK_TYPES: tuple[str, ...] = t.get_args(TaskType)


class EmbeddingRequest(BaseModel):
    model: EmbeddingModel
    task_type: TaskType
    texts: list[str]


class EmbeddingUsage(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    total_tokens: int = 0


class EmbeddingResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    embeddings: list[Embedding]
    usage: EmbeddingUsage = Field(default_factory=EmbeddingUsage)
    model: str | None = None
