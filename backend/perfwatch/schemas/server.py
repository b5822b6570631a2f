from datetime import datetime

from pydantic import BaseModel, Field


class ServerBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    connection_ref: str = Field(..., min_length=1, max_length=500)
    enabled: bool = True
    favorite: bool = False
    description: str | None = None


class ServerCreate(ServerBase):
    pass


class ServerUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    connection_ref: str | None = Field(None, min_length=1, max_length=500)
    enabled: bool | None = None
    favorite: bool | None = None
    description: str | None = None


class ServerResponse(ServerBase):
    id: int
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OnDemandRunRequest(BaseModel):
    # Empty means every enabled collector
    collectors: list[str] = Field(default_factory=list)


class OnDemandRunResponse(BaseModel):
    server_id: int
    collectors: list[str]
    status: str = "accepted"
