from datetime import datetime

from pydantic import BaseModel, ConfigDict


class File(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    upload_id: int | None = None
    task_id: int | None = None
    list_id: int | None = None
    user_id: int | None = None
    url: str | None = None
    file_name: str | None = None
    content_type: str | None = None
    file_size: int | None = None
    local_created_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    revision: int | None = None
    type: str | None = None
