"""
准入 webhook 的数据模型定义。
只建模实际用到的字段，其余字段原样忽略。
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AdmissionRequest(BaseModel):
    """
    AdmissionReview.request，object 为待创建的 Pod（原始 JSON）。
    """
    model_config = ConfigDict(extra="ignore")

    uid: str = ""
    namespace: Optional[str] = None
    object: Any = None


class AdmissionResponse(BaseModel):
    """
    AdmissionReview.response；patch 为 base64 编码的 JSON Patch。
    """
    model_config = ConfigDict(populate_by_name=True)

    uid: str
    allowed: bool
    patch_type: Optional[str] = Field(default=None, alias="patchType")
    patch: Optional[str] = None


class AdmissionReview(BaseModel):
    """
    AdmissionReview 信封，请求与响应共用。
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(default="admission.k8s.io/v1", alias="apiVersion")
    kind: str = "AdmissionReview"
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None


class PodMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    generate_name: Optional[str] = Field(default=None, alias="generateName")
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        # 序列化后的对象中空映射可能为 null
        return {} if v is None else v


class Pod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: PodMetadata = Field(default_factory=PodMetadata)
    spec: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", "spec", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return {} if v is None else v


class VolumeMount(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mount_path: str = Field(alias="mountPath")
    name: str


class Container(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    image: str
    name: str
    volume_mounts: List[VolumeMount] = Field(alias="volumeMounts")


class HostPathVolumeSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    type: str


class Volume(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host_path: HostPathVolumeSource = Field(alias="hostPath")
    name: str


class PatchOperation(BaseModel):
    """
    RFC 6902 JSON Patch 操作。
    """
    model_config = ConfigDict(frozen=True)

    op: str
    path: str
    value: Dict[str, Any]
