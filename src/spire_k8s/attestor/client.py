"""
与集群控制面交互的 CSR 客户端。

负责：
- 将 CSR 包装为 certificates.k8s.io/v1 CertificateSigningRequest 资源并提交；
- 监听 CSR 变更事件流，直到目标 CSR 被批准并签发证书。
"""

from __future__ import annotations

import base64
import threading
import time
from typing import Any, Callable, Optional

import urllib3
from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException
from loguru import logger

from .core import AttestationError

CSR_GROUPS = ["system:authenticated"]
CSR_USAGES = ["digital signature", "key encipherment", "client auth"]
APPROVED_CONDITION = "Approved"
REJECTED_CONDITIONS = {"Denied", "Failed"}

# 限流与服务端临时故障，可以重试
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class SubmissionError(AttestationError):
    pass


class WatchError(AttestationError):
    pass


class ApprovalTimeout(AttestationError):
    pass


class AttestationCancelled(AttestationError):
    pass


def build_request_name(agent_name: str, now: Optional[float] = None) -> str:
    """CSR 资源名：<agent_name>-<unix 秒>。"""
    ts = int(time.time() if now is None else now)
    return f"{agent_name}-{ts}"


def build_signing_request(
    name: str, csr_pem: bytes, signer_name: str
) -> client.V1CertificateSigningRequest:
    """
    构造 CertificateSigningRequest 资源对象。
    :param name: 资源名称，需在未完成的 CSR 中唯一。
    :param csr_pem: PEM 编码的 CSR。
    :param signer_name: 签发者名称（v1 API 必填）。
    """
    return client.V1CertificateSigningRequest(
        api_version="certificates.k8s.io/v1",
        kind="CertificateSigningRequest",
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1CertificateSigningRequestSpec(
            groups=list(CSR_GROUPS),
            # 字节字段在 Python 客户端中以 base64 字符串传输
            request=base64.b64encode(csr_pem).decode("ascii"),
            signer_name=signer_name,
            usages=list(CSR_USAGES),
        ),
    )


def _is_transient(err: Exception) -> bool:
    if isinstance(err, ApiException):
        return err.status in TRANSIENT_STATUS_CODES
    return isinstance(err, (urllib3.exceptions.HTTPError, ConnectionError))


def approved_certificate(event: dict, request_name: str) -> Optional[bytes]:
    """
    检查一条 watch 事件，返回目标 CSR 已签发的证书字节。

    - ERROR 事件或对象类型不是 CSR 时抛出 WatchError；
    - 名称不匹配、非 MODIFIED 事件、未批准或证书尚未签发时返回 None。
    """
    event_type = event.get("type")
    obj = event.get("object")

    if event_type == "ERROR":
        raise WatchError(f"CSR 事件流返回错误: {event.get('raw_object') or obj}")
    if not isinstance(obj, client.V1CertificateSigningRequest):
        raise WatchError(f"监听过程中收到意外的对象类型: {type(obj).__name__}")

    name = obj.metadata.name if obj.metadata else None
    if event_type != "MODIFIED" or name != request_name:
        return None

    conditions = (obj.status.conditions if obj.status else None) or []
    condition_types = {c.type for c in conditions}
    rejected = condition_types & REJECTED_CONDITIONS
    if rejected:
        logger.warning(f"CSR {request_name} 状态为 {sorted(rejected)}，继续等待")
    if APPROVED_CONDITION not in condition_types:
        return None

    certificate = obj.status.certificate
    if not certificate:
        logger.debug(f"CSR {request_name} 已批准，等待证书签发")
        return None
    if isinstance(certificate, bytes):
        return certificate
    return base64.b64decode(certificate)


class AttestationClient:
    """
    CSR 提交与审批监听。

    :param api: CertificatesV1Api（或同接口对象）。
    :param watch_factory: 返回 watch.Watch 实例的工厂，测试中可替换。
    :param submit_attempts: 提交遇到临时性故障时的最大尝试次数。
    :param retry_backoff_seconds: 线性退避的基础间隔。
    """

    def __init__(
        self,
        api: Any,
        *,
        watch_factory: Callable[[], Any] = watch.Watch,
        submit_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._api = api
        self._watch_factory = watch_factory
        self._submit_attempts = max(1, submit_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._clock = clock

    def submit(self, request: client.V1CertificateSigningRequest) -> client.V1CertificateSigningRequest:
        """
        提交 CSR 资源。临时性故障按线性退避重试，其余错误（名称冲突、鉴权失败等）直接失败。
        :raises SubmissionError: 如果创建被拒绝或重试耗尽。
        """
        name = request.metadata.name
        for attempt in range(1, self._submit_attempts + 1):
            try:
                created = self._api.create_certificate_signing_request(request)
                logger.info(f"已提交证书签名请求: {name}")
                return created
            except (ApiException, urllib3.exceptions.HTTPError, ConnectionError) as e:
                if not _is_transient(e) or attempt == self._submit_attempts:
                    raise SubmissionError(f"无法创建证书签名请求 {name}: {e}") from e
                delay = self._retry_backoff_seconds * attempt
                logger.warning(
                    f"提交证书签名请求失败（第 {attempt}/{self._submit_attempts} 次），{delay}s 后重试: {e}"
                )
                self._sleep(delay)
        raise SubmissionError(f"无法创建证书签名请求 {name}")

    def wait_for_approval(
        self,
        request_name: str,
        *,
        resource_version: Optional[str] = None,
        timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> bytes:
        """
        监听 CSR 事件流直到目标 CSR 被批准并签发证书。

        集群不支持按名称在服务端过滤此类监听，因此监听全部 CSR 并在本地过滤。
        :param request_name: 已提交的 CSR 名称。
        :param resource_version: 创建 CSR 时返回的 resourceVersion；从该版本之后开始监听，
            使提交后发生的批准与签发都以 MODIFIED 事件送达，而不是被合并为一条 ADDED 事件。
        :param timeout: 最长等待秒数，None 表示无限等待。
        :param stop_event: 置位后在下一条事件到达时取消等待；空闲的事件流不会因此结束，
            需要立即中断时配合 services.cancel_on_signal 使用。
        :return: 签发的证书字节。
        :raises ApprovalTimeout: 超时仍未获批。
        :raises AttestationCancelled: stop_event 被置位。
        :raises WatchError: 事件流出错或收到意外对象。
        """
        w = self._watch_factory()
        kwargs: dict = {}
        if resource_version:
            kwargs["resource_version"] = resource_version
        deadline = None
        if timeout is not None:
            kwargs["timeout_seconds"] = max(1, int(timeout))
            deadline = self._clock() + timeout

        logger.info(f"开始监听证书签名请求 {request_name} 的审批状态")
        stream = w.stream(self._api.list_certificate_signing_request, **kwargs)
        try:
            for event in stream:
                if stop_event is not None and stop_event.is_set():
                    raise AttestationCancelled(f"等待 {request_name} 审批时被取消")
                if deadline is not None and self._clock() >= deadline:
                    raise ApprovalTimeout(f"{timeout}s 内未等到 {request_name} 被批准")
                certificate = approved_certificate(event, request_name)
                if certificate:
                    logger.info(f"证书签名请求 {request_name} 已批准")
                    return certificate
        except (ApiException, urllib3.exceptions.HTTPError, ConnectionError) as e:
            raise WatchError(f"监听 CSR 事件流失败: {e}") from e
        finally:
            w.stop()

        if timeout is not None:
            raise ApprovalTimeout(f"{timeout}s 内未等到 {request_name} 被批准")
        raise WatchError("CSR 事件流意外结束")
