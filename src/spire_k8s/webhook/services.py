"""
准入 webhook 的业务逻辑层。
此模块解析 AdmissionReview，决定是否注入并组装响应，供路由层调用。
"""

import base64
import json

from loguru import logger
from pydantic import ValidationError

from .core import JSON_PATCH_TYPE, PatchBuilder, SidecarPolicy, always_inject
from .schemas import AdmissionResponse, AdmissionReview, Pod


def review_admission(
    body: bytes, builder: PatchBuilder, policy: SidecarPolicy = always_inject
) -> AdmissionReview:
    """
    处理一次 Pod 创建的准入审查。
    :param body: HTTP 请求体。
    :param builder: 补丁构造器。
    :param policy: 注入策略。
    :return: 包含 response 的 AdmissionReview，始终 allowed=True。
    :raises ValueError: 如果请求体、request 字段或 Pod 对象无法解析。
    :raises PatchError: 如果补丁构造失败。
    """
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ValueError(f"解析请求体失败: {e}") from e

    try:
        review = AdmissionReview.model_validate(payload)
    except ValidationError as e:
        raise ValueError(f"解析请求体失败: {e.errors()[0]['msg']}") from e

    request = review.request
    if request is None:
        raise ValueError("解析请求体失败: 缺少 request")

    try:
        pod = Pod.model_validate(request.object)
    except ValidationError as e:
        raise ValueError(f"解析 Pod 对象失败: {e.errors()[0]['msg']}") from e

    response = AdmissionResponse(uid=request.uid, allowed=True)
    if policy(pod.metadata, request):
        patch = builder.build()
        response.patch_type = JSON_PATCH_TYPE
        response.patch = base64.b64encode(patch).decode("ascii")
        logger.info(f"为 Pod {pod.metadata.name or pod.metadata.generate_name} 注入 sidecar (uid={request.uid})")
    else:
        logger.info(f"策略跳过 Pod {pod.metadata.name or pod.metadata.generate_name} (uid={request.uid})")

    return AdmissionReview(api_version=review.api_version, kind=review.kind, response=response)
