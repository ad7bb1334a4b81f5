from pydantic import BaseModel, Field, ConfigDict
from typing import Optional


class VMRecord(BaseModel):
    """Persisted VM configuration and last-known runtime handle."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    cpu: int = Field(..., ge=1)
    memory: int = Field(..., ge=1)
    disk_name: str = Field(..., alias="diskName")
    format: str
    iso: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[str] = Field(None, alias="startedAt")

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)


class VMStatus(VMRecord):
    running: Optional[bool] = False


# Request bodies keep every field optional so that missing fields reach the
# managers and come back as a 400 with a descriptive message.
class DiskCreate(BaseModel):
    name: Optional[str] = None
    size: Optional[int] = None
    format: Optional[str] = None
    type: Optional[str] = None


class DiskUpdate(BaseModel):
    name: Optional[str] = None
    size: Optional[int] = None


class Disk(BaseModel):
    name: str
    filename: str
    size: int
    format: str
    type: str


class VMCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    cpu: Optional[int] = None
    memory: Optional[int] = None
    disk_name: Optional[str] = Field(None, alias="diskName")
    format: Optional[str] = None
    iso: Optional[str] = None


class VMEdit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cpu: Optional[int] = None
    memory: Optional[int] = None
    new_name: Optional[str] = Field(None, alias="newName")
