"""
Sidecar 注入的核心逻辑：JSON Patch 的构造与注入策略。
"""

from __future__ import annotations

import json
from typing import Callable, Iterable, List, Optional

from .schemas import (
    AdmissionRequest,
    Container,
    HostPathVolumeSource,
    PatchOperation,
    PodMetadata,
    Volume,
    VolumeMount,
)

SIDECAR_CONTAINER_NAME = "spire-sidecar"
SIDECAR_VOLUME_NAME = "spire-wl-api"
SIDECAR_MOUNT_PATH = "/spire"
HOST_PATH_TYPE = "Directory"

CONTAINERS_APPEND_PATH = "/spec/containers/-"
VOLUMES_APPEND_PATH = "/spec/volumes/-"

JSON_PATCH_TYPE = "JSONPatch"

# 注入策略：根据 Pod 元数据（与所在的准入请求）决定是否注入 sidecar
SidecarPolicy = Callable[[PodMetadata, Optional[AdmissionRequest]], bool]


class PatchError(RuntimeError):
    pass


def always_inject(metadata: PodMetadata, request: Optional[AdmissionRequest] = None) -> bool:
    """默认策略：无条件注入。"""
    return True


def exclude_namespaces(namespaces: Iterable[str]) -> SidecarPolicy:
    """
    返回一个跳过指定命名空间的策略。
    Pod 元数据中没有命名空间时使用准入请求中的命名空间。
    """
    excluded = frozenset(namespaces)

    def policy(metadata: PodMetadata, request: Optional[AdmissionRequest] = None) -> bool:
        namespace = metadata.namespace or (request.namespace if request else None)
        return namespace not in excluded

    return policy


class PatchBuilder:
    """
    生成追加 sidecar 容器与共享 hostPath 卷的 JSON Patch。

    容器与卷在初始化时直接构造为不可变模型，之后每次请求只做序列化。
    """

    def __init__(self, sidecar_image: str, host_mount: str):
        if not sidecar_image:
            raise ValueError("sidecar 镜像不能为空")
        if not host_mount:
            raise ValueError("hostPath 挂载路径不能为空")
        self.sidecar_image = sidecar_image
        self.host_mount = host_mount
        self._container = Container(
            image=sidecar_image,
            name=SIDECAR_CONTAINER_NAME,
            volume_mounts=[VolumeMount(mount_path=SIDECAR_MOUNT_PATH, name=SIDECAR_VOLUME_NAME)],
        )
        self._volume = Volume(
            host_path=HostPathVolumeSource(path=host_mount, type=HOST_PATH_TYPE),
            name=SIDECAR_VOLUME_NAME,
        )

    def operations(self) -> List[PatchOperation]:
        """按固定顺序返回两条 add 操作：先容器，后卷。"""
        return [
            PatchOperation(
                op="add",
                path=CONTAINERS_APPEND_PATH,
                value=self._container.model_dump(by_alias=True),
            ),
            PatchOperation(
                op="add",
                path=VOLUMES_APPEND_PATH,
                value=self._volume.model_dump(by_alias=True),
            ),
        ]

    def build(self) -> bytes:
        """
        序列化为 JSON 数组。
        :raises PatchError: 如果序列化失败。
        """
        try:
            ops = [op.model_dump() for op in self.operations()]
            return json.dumps(ops, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise PatchError(f"生成补丁失败: {e}") from e
