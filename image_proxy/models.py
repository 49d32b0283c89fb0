import uuid
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional

class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    model: str
    prompt: str
    image_url: Optional[str] = Field(default=None, alias="imageUrl")  # legacy single-image field
    image_urls: List[str] = Field(default_factory=list, alias="imageUrls")
    image_size: str = Field(default="", alias="imageSize")
    api_key: str = Field(default="", alias="apiKey")
    task_id: str = Field(default="", alias="taskId")
    parent_task_id: Optional[str] = Field(default=None, alias="parentTaskId")
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        images = data.pop("imageUrls", None) or data.pop("image_urls", None)
        single = data.get("imageUrl") or data.get("image_url")
        data["imageUrls"] = images or ([single] if single else [])
        data["taskId"] = data.pop("taskId", None) or data.pop("task_id", None) or str(uuid.uuid4())
        return data

    @property
    def text_prompt(self) -> str:
        return f"{self.prompt} {self.image_size}"

class GenerateResponse(BaseModel):
    success: bool
    taskId: Optional[str] = None
    imageUrl: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

class StatusResponse(BaseModel):
    success: bool
    status: str  # processing | completed | failed
    imageUrl: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

class CallbackPayload(BaseModel):
    taskId: str
    parentTaskId: Optional[str] = None
    status: str  # completed | failed
    imageUrl: Optional[str] = None
    error: Optional[str] = None

class MemoryUsage(BaseModel):
    used: float
    total: float
    percent: float

class ResourceUsage(BaseModel):
    memoryMB: MemoryUsage
    cpuPercent: float
    loadAvg: List[float]
    activeTasks: int
    totalProcessed: int
    asyncioTasks: int

class HealthResponse(BaseModel):
    status: str
    service: str
    tasks: int
    processed: int
    storedTasks: int
    resources: ResourceUsage
