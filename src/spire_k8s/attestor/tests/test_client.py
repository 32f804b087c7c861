"""
测试 client.py 模块：CSR 资源构造、提交重试与审批监听。
"""

import base64
import threading
from typing import List, Optional

import pytest
from unittest.mock import MagicMock
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from src.spire_k8s.attestor import client as csr_client


class FakeWatch:
    """按顺序回放事件的 watch 替身。"""

    def __init__(self, events: List[dict], error: Optional[Exception] = None):
        self.events = events
        self.error = error
        self.stopped = False
        self.kwargs = None

    def stream(self, func, **kwargs):
        self.kwargs = kwargs
        for event in self.events:
            if self.stopped:
                return
            yield event
        if self.error is not None:
            raise self.error

    def stop(self):
        self.stopped = True


def _csr_event(name: str, event_type: str = "MODIFIED", conditions=(), certificate: Optional[bytes] = None) -> dict:
    status = client.V1CertificateSigningRequestStatus(
        conditions=[
            client.V1CertificateSigningRequestCondition(type=c, status="True") for c in conditions
        ]
        or None,
        certificate=base64.b64encode(certificate).decode() if certificate else None,
    )
    obj = client.V1CertificateSigningRequest(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1CertificateSigningRequestSpec(request="", signer_name="x"),
        status=status,
    )
    return {"type": event_type, "object": obj}


def _client(fake: FakeWatch, **kwargs) -> csr_client.AttestationClient:
    return csr_client.AttestationClient(MagicMock(), watch_factory=lambda: fake, **kwargs)


def test_build_request_name():
    assert csr_client.build_request_name("node-1", 1700000000.7) == "node-1-1700000000"


def test_build_signing_request():
    """测试 CSR 资源字段"""
    req = csr_client.build_signing_request("node-1-1", b"PEM", "kubernetes.io/kube-apiserver-client-kubelet")
    assert req.metadata.name == "node-1-1"
    assert req.spec.groups == ["system:authenticated"]
    assert req.spec.usages == ["digital signature", "key encipherment", "client auth"]
    assert base64.b64decode(req.spec.request) == b"PEM"
    assert req.spec.signer_name == "kubernetes.io/kube-apiserver-client-kubelet"


def test_wait_for_approval_returns_certificate():
    fake = FakeWatch([_csr_event("node-1-1", conditions=["Approved"], certificate=b"CERT")])
    assert _client(fake).wait_for_approval("node-1-1") == b"CERT"
    assert fake.stopped


def test_wait_for_approval_ignores_other_requests():
    """测试其他 CSR 的批准事件不会结束等待"""
    fake = FakeWatch(
        [
            _csr_event("node-2-1", conditions=["Approved"], certificate=b"OTHER"),
            _csr_event("node-1-1"),
            _csr_event("node-1-1", event_type="ADDED", conditions=["Approved"], certificate=b"ADDED"),
            _csr_event("node-1-1", conditions=["Denied"]),
            _csr_event("node-1-1", conditions=["Approved"]),
            _csr_event("node-1-1", conditions=["Approved"], certificate=b"MINE"),
            _csr_event("node-1-1", conditions=["Approved"], certificate=b"LATER"),
        ]
    )
    assert _client(fake).wait_for_approval("node-1-1") == b"MINE"


def test_wait_for_approval_stream_ends_without_approval():
    fake = FakeWatch([_csr_event("node-1-1")])
    with pytest.raises(csr_client.WatchError, match="意外结束"):
        _client(fake).wait_for_approval("node-1-1")


def test_wait_for_approval_unexpected_object():
    """测试收到非 CSR 对象时致命失败"""
    fake = FakeWatch([{"type": "MODIFIED", "object": client.V1Pod()}])
    with pytest.raises(csr_client.WatchError, match="意外的对象类型"):
        _client(fake).wait_for_approval("node-1-1")


def test_wait_for_approval_error_event():
    fake = FakeWatch([{"type": "ERROR", "object": {"code": 410}, "raw_object": {"code": 410}}])
    with pytest.raises(csr_client.WatchError):
        _client(fake).wait_for_approval("node-1-1")


def test_wait_for_approval_stream_exception():
    fake = FakeWatch([_csr_event("node-1-1")], error=ApiException(status=500))
    with pytest.raises(csr_client.WatchError, match="监听 CSR 事件流失败"):
        _client(fake).wait_for_approval("node-1-1")
    assert fake.stopped


def test_wait_for_approval_timeout_passed_to_stream():
    """测试超时：服务端 timeout_seconds 到期后事件流结束"""
    fake = FakeWatch([_csr_event("node-1-1")])
    with pytest.raises(csr_client.ApprovalTimeout):
        _client(fake).wait_for_approval("node-1-1", timeout=5)
    assert fake.kwargs == {"timeout_seconds": 5}


def test_wait_for_approval_starts_from_resource_version():
    """测试从创建 CSR 时返回的 resourceVersion 开始监听"""
    fake = FakeWatch([_csr_event("node-1-1", conditions=["Approved"], certificate=b"CERT")])
    assert _client(fake).wait_for_approval("node-1-1", resource_version="12345") == b"CERT"
    assert fake.kwargs == {"resource_version": "12345"}


def test_wait_for_approval_deadline_checked_per_event():
    """测试本地截止时间在每条事件到达时检查"""
    ticks = iter([0.0, 10.0])
    fake = FakeWatch([_csr_event("node-1-1", conditions=["Approved"], certificate=b"LATE")])
    c = _client(fake, clock=lambda: next(ticks))
    with pytest.raises(csr_client.ApprovalTimeout):
        c.wait_for_approval("node-1-1", timeout=5)


def test_wait_for_approval_cancelled():
    stop = threading.Event()
    stop.set()
    fake = FakeWatch([_csr_event("node-1-1", conditions=["Approved"], certificate=b"CERT")])
    with pytest.raises(csr_client.AttestationCancelled):
        _client(fake).wait_for_approval("node-1-1", stop_event=stop)


def test_submit_success():
    api = MagicMock()
    req = csr_client.build_signing_request("node-1-1", b"PEM", "signer")
    c = csr_client.AttestationClient(api)
    c.submit(req)
    api.create_certificate_signing_request.assert_called_once_with(req)


def test_submit_retries_transient_errors():
    """测试临时性故障按退避重试"""
    api = MagicMock()
    api.create_certificate_signing_request.side_effect = [ApiException(status=503), ApiException(status=429), "ok"]
    sleeps = []
    c = csr_client.AttestationClient(api, submit_attempts=3, retry_backoff_seconds=0.5, sleep=sleeps.append)

    assert c.submit(csr_client.build_signing_request("n-1", b"PEM", "signer")) == "ok"
    assert sleeps == [0.5, 1.0]


def test_submit_permanent_error_not_retried():
    """测试名称冲突等永久性错误不重试"""
    api = MagicMock()
    api.create_certificate_signing_request.side_effect = ApiException(status=409, reason="AlreadyExists")
    sleeps = []
    c = csr_client.AttestationClient(api, sleep=sleeps.append)

    with pytest.raises(csr_client.SubmissionError, match="无法创建证书签名请求"):
        c.submit(csr_client.build_signing_request("n-1", b"PEM", "signer"))
    assert api.create_certificate_signing_request.call_count == 1
    assert sleeps == []


def test_submit_retries_exhausted():
    api = MagicMock()
    api.create_certificate_signing_request.side_effect = ConnectionError("refused")
    c = csr_client.AttestationClient(api, submit_attempts=2, sleep=lambda s: None)

    with pytest.raises(csr_client.SubmissionError):
        c.submit(csr_client.build_signing_request("n-1", b"PEM", "signer"))
    assert api.create_certificate_signing_request.call_count == 2
