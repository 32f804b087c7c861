"""
Sidecar 注入 webhook 的 FastAPI 应用入口点。
"""

from typing import Optional

from fastapi import FastAPI
from loguru import logger

from src.spire_k8s.config import WebhookConfig
from src.spire_k8s.webhook.core import PatchBuilder, SidecarPolicy, always_inject, exclude_namespaces
from src.spire_k8s.webhook.router import router as webhook_router


def create_app(
    config: Optional[WebhookConfig] = None, policy: Optional[SidecarPolicy] = None
) -> FastAPI:
    """
    构建 webhook 应用。补丁构造器与注入策略在启动时创建一次，之后只读。
    :param config: webhook 配置，默认从环境变量 / .env / config.json 加载。
    :param policy: 注入策略，默认按 excluded_namespaces 推导。
    """
    if config is None:
        config = WebhookConfig()
    if policy is None:
        policy = exclude_namespaces(config.excluded_namespaces) if config.excluded_namespaces else always_inject

    app = FastAPI(title="SPIRE Kubernetes Sidecar Injector")
    app.state.patch_builder = PatchBuilder(config.sidecar_image, config.host_mount)
    app.state.sidecar_policy = policy
    app.include_router(webhook_router)

    logger.info(f"config: {config.model_dump_json(indent=4)}")
    return app
