"""
节点身份证明的业务流程层。
此模块串联核心逻辑与 CSR 客户端，并负责集群客户端的构建。
"""

from __future__ import annotations

import os
import signal
import socket
import threading
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException
from loguru import logger

from src.spire_k8s.config import AttestorConfig
from . import core
from .client import AttestationCancelled, AttestationClient, build_request_name, build_signing_request
from .schemas import AttestationState, IdentityDocument


def resolve_kubeconfig_path(option: Optional[str]) -> str:
    """
    解析 kubeconfig 路径：显式配置 > KUBECONFIG 环境变量 > ~/.kube/config。
    :raises ConfigurationError: 三者都不可用时。
    """
    if option:
        return option
    env_path = os.environ.get("KUBECONFIG")
    if env_path:
        return env_path
    home = os.environ.get("HOME")
    if home:
        return str(Path(home) / ".kube" / "config")
    raise core.ConfigurationError("无法定位 Kubernetes 集群配置，请通过 ATTESTOR_KUBECONFIG 指定")


def resolve_agent_name(option: str) -> str:
    """未配置时使用本机主机名作为节点代理名称。"""
    if option:
        return option
    try:
        name = socket.gethostname()
    except OSError as e:
        raise core.ConfigurationError(f"无法自动确定节点代理名称，请通过 ATTESTOR_AGENT_NAME 指定: {e}") from e
    if not name:
        raise core.ConfigurationError("无法自动确定节点代理名称，请通过 ATTESTOR_AGENT_NAME 指定")
    logger.info(f"使用节点代理名称 {name} 生成身份文档")
    return name


def build_certificates_api(cfg: AttestorConfig) -> client.CertificatesV1Api:
    """
    使用 kubeconfig 与显式的客户端证书构建 CertificatesV1Api。
    :raises ConfigurationError: 认证参数缺失或 kubeconfig 无法加载。
    """
    if not (cfg.ca_cert and cfg.client_cert and cfg.client_key):
        raise core.ConfigurationError("ca_cert、client_cert、client_key 均为必填的认证参数")

    kubeconfig_path = resolve_kubeconfig_path(cfg.kubeconfig)
    logger.info(f"使用 kubeconfig 文件 {kubeconfig_path}")

    configuration = client.Configuration()
    try:
        kube_config.load_kube_config(config_file=kubeconfig_path, client_configuration=configuration)
    except (ConfigException, OSError, yaml.YAMLError) as e:
        raise core.ConfigurationError(f"访问 Kubernetes 集群配置失败: {e}") from e

    configuration.cert_file = cfg.client_cert
    configuration.key_file = cfg.client_key
    configuration.ssl_ca_cert = cfg.ca_cert
    return client.CertificatesV1Api(client.ApiClient(configuration))


def cancel_on_signal(stop_event: threading.Event, signum: int = signal.SIGTERM) -> None:
    """
    收到信号时置位 stop_event 并在主线程抛出 AttestationCancelled。

    异常会打断阻塞在事件流读取上的等待，使空闲的 watch 也能立即结束；
    之后的状态流转与其它致命错误相同。只能在主线程调用。
    """

    def handler(received: int, frame) -> None:
        stop_event.set()
        raise AttestationCancelled(f"收到信号 {signal.Signals(received).name}，取消身份证明")

    signal.signal(signum, handler)


def run_attestation(
    cfg: AttestorConfig,
    *,
    api: Any = None,
    watch_factory: Optional[Callable[[], Any]] = None,
    stop_event: Optional[threading.Event] = None,
    now: Optional[float] = None,
) -> IdentityDocument:
    """
    执行一次完整的身份证明：生成私钥 → 构造 CSR → 提交 → 等待批准 → 写入证书。
    :param cfg: attestor 配置。
    :param api: 可注入的 CertificatesV1Api，默认按配置构建。
    :param watch_factory: 可注入的 watch 工厂，默认 kubernetes.watch.Watch。
    :param stop_event: 用于取消审批等待。
    :param now: CSR 名称使用的时间戳，默认当前时间。
    :return: 写入完成的身份文档。
    :raises AttestationError: 任一阶段失败。
    """
    state = AttestationState.INIT

    def advance(next_state: AttestationState) -> None:
        nonlocal state
        logger.info(f"身份证明状态: {state.value} -> {next_state.value}")
        state = next_state

    try:
        agent_name = resolve_agent_name(cfg.agent_name)
        store = core.IdentityStore(cfg.id_dir)
        store.ensure_directory()
        logger.info(f"使用身份文档目录: {store.directory}")

        if api is None:
            api = build_certificates_api(cfg)
        client_kwargs: dict = {
            "submit_attempts": cfg.submit_attempts,
            "retry_backoff_seconds": cfg.retry_backoff_seconds,
        }
        if watch_factory is not None:
            client_kwargs["watch_factory"] = watch_factory
        attestation_client = AttestationClient(api, **client_kwargs)

        key = core.generate_and_store_private_key(store.staged_key_path)
        advance(AttestationState.KEY_SAVED)

        csr_der = core.build_node_csr(key, agent_name)
        request_name = build_request_name(agent_name, now)
        request = build_signing_request(request_name, core.encode_csr_pem(csr_der), cfg.signer_name)
        created = attestation_client.submit(request)
        resource_version = created.metadata.resource_version if created and created.metadata else None
        advance(AttestationState.REQUEST_SUBMITTED)

        advance(AttestationState.WATCHING)
        certificate = attestation_client.wait_for_approval(
            request_name,
            resource_version=resource_version,
            timeout=cfg.approval_timeout_seconds,
            stop_event=stop_event,
        )
        advance(AttestationState.APPROVED)

        store.commit(certificate)
        advance(AttestationState.TERMINAL)
    except core.AttestationError as e:
        logger.error(f"身份证明在 {state.value} 阶段失败: {e}")
        advance(AttestationState.FATAL)
        raise

    return IdentityDocument(
        agent_name=agent_name,
        request_name=request_name,
        key_path=str(store.key_path),
        cert_path=str(store.cert_path),
    )
