from __future__ import annotations
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    # Wire names are camelCase (the control panel posts them that way).
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ----- Requests -----
class CreateInstanceRequest(_CamelModel):
    model_name: Optional[str] = Field(default=None, alias="modelName")
    zone: Optional[str] = None


class ExecuteCommandRequest(_CamelModel):
    instance_ip: Optional[str] = Field(default=None, alias="instanceIp")
    instance_name: Optional[str] = Field(default=None, alias="instanceName")
    zone: Optional[str] = None
    ollama_command: Optional[str] = Field(default=None, alias="ollamaCommand")
    command_payload: Any = Field(default=None, alias="commandPayload")


# ----- Responses -----
class CreateInstanceResponse(_CamelModel):
    message: str
    instance_name: str = Field(alias="instanceName")
    status: str
    external_ip: str = Field(alias="externalIp")
    zone: str
    model_name: str = Field(alias="modelName")


class InstanceStatusResponse(_CamelModel):
    instance_name: str = Field(alias="instanceName")
    zone: str
    status: str
    network_interfaces: List[Dict[str, Any]] = Field(default_factory=list, alias="networkInterfaces")
