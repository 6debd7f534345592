from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ObjectMeta(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    namespace: str = "default"
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")


class MicroSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: str = Field("", description="Kind of micro component, e.g. api, web, proxy")
    size: int = Field(0, ge=0, description="Desired number of replicas of the micro deployment")


class MicroStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    nodes: list[str] = Field(default_factory=list, description="Names of the micro pods")

    @field_validator("nodes", mode="before")
    @classmethod
    def _null_nodes(cls, v: Any) -> Any:
        return [] if v is None else v


class Micro(BaseModel):
    """The Micro custom resource as returned by the custom objects API."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field("micro.mu/v1alpha1", alias="apiVersion")
    kind: str = "Micro"
    metadata: ObjectMeta
    spec: MicroSpec = Field(default_factory=MicroSpec)
    status: MicroStatus = Field(default_factory=MicroStatus)

    @field_validator("spec", "status", mode="before")
    @classmethod
    def _null_section(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Micro:
        return cls.model_validate(obj)

    def to_object(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class ReconcileRequest:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    requeue: bool = False
