from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

class SubmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    paper_id: int = Field(..., alias="paperId")
    file_name: str = Field(..., alias="fileName", min_length=1)
    file_content: str = Field(..., alias="fileContent", min_length=1)

    def queue_payload(self) -> Dict[str, Any]:
        return {"paperId": self.paper_id, "fileName": self.file_name, "fileContent": self.file_content}

    def delivery_body(self) -> Dict[str, Any]:
        return {"questionPaperId": self.paper_id, "fileName": self.file_name, "fileContent": self.file_content}

    @classmethod
    def from_queue_payload(cls, payload: Dict[str, Any]) -> "SubmissionRequest":
        return cls(paperId=payload["paperId"], fileName=payload["fileName"], fileContent=payload["fileContent"])

class StoredRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    payload: Dict[str, Any]
    timestamp: datetime
    pending_sync: bool = Field(False, alias="pendingSync")

class CaptureResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delivered: bool
    queued: bool
    record_id: Optional[int] = Field(None, alias="recordId")
    status_code: Optional[int] = Field(None, alias="statusCode")
    detail: Optional[Any] = None

class SyncReport(BaseModel):
    tag: str
    attempted: int = 0
    delivered: List[int] = Field(default_factory=list)
    failed: List[int] = Field(default_factory=list)

class PushMessage(BaseModel):
    title: str
    message: str
    url: Optional[str] = None

class Notification(BaseModel):
    title: str
    body: str
    icon: Optional[str] = None
    badge: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
