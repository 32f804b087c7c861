"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- AttestorConfig: 节点身份证明端（attestor）的设置类
- WebhookConfig: 准入 webhook（sidecar 注入）的设置类
内部方法：
- JsonFileSettingsSource: 从 JSON 文件读取配置的自定义 Source
- _customise_sources: 统一的配置来源顺序
- WebhookConfig.parse_namespaces: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource


class JsonFileSettingsSource(PydanticBaseSettingsSource):
    """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。

    文件中可以按 "attestor" / "webhook" 分节，也可以直接平铺字段。
    """

    def __init__(self, settings_cls, section: str):
        super().__init__(settings_cls)
        self._section = section
        self._data: Dict[str, Any] | None = None

    def _load(self) -> None:
        if self._data is not None:
            return
        cfg_path = os.environ.get("CONFIG_FILE")
        path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
        if not path.exists():
            self._data = {}
            return
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            self._data = {}
            return
        if not isinstance(data, dict):
            self._data = {}
            return
        section = data.get(self._section)
        self._data = section if isinstance(section, dict) else data

    def __call__(self) -> Dict[str, Any]:
        self._load()
        return dict(self._data or {})

    def get_field_value(self, field, field_name):  # type: ignore[override]
        """为满足抽象基类要求，按字段名返回字段值。"""
        self._load()
        data = self._data or {}
        if field_name in data:
            return data[field_name], field_name, True
        return None, field_name, False


def _customise_sources(
    settings_cls: type[BaseSettings],
    section: str,
    init_settings,
    env_settings,
    dotenv_settings,
    file_secret_settings,
) -> Tuple[PydanticBaseSettingsSource, ...]:
    """配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""
    return (
        init_settings,
        env_settings,
        dotenv_settings,
        JsonFileSettingsSource(settings_cls, section),
        file_secret_settings,
    )


class AttestorConfig(BaseSettings):
    # 集群访问
    kubeconfig: Optional[str] = None
    ca_cert: str = ""
    client_cert: str = ""
    client_key: str = ""

    # 身份文档
    agent_name: str = ""
    id_dir: str = "/tmp/spire-agent-id"

    # CSR 提交与审批
    signer_name: str = "kubernetes.io/kube-apiserver-client-kubelet"
    approval_timeout_seconds: Optional[float] = None
    submit_attempts: int = 3
    retry_backoff_seconds: float = 1.0

    model_config = SettingsConfigDict(
        env_prefix="ATTESTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return _customise_sources(
            settings_cls, "attestor", init_settings, env_settings, dotenv_settings, file_secret_settings
        )


class WebhookConfig(BaseSettings):
    # TLS 材料
    cert_file: str
    key_file: str

    # 注入内容
    sidecar_image: str
    host_mount: str

    host: str = "0.0.0.0"
    port: int = 9999
    excluded_namespaces: Annotated[List[str], NoDecode] = []

    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("excluded_namespaces", mode="before")
    @classmethod
    def parse_namespaces(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析命名空间列表。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return _customise_sources(
            settings_cls, "webhook", init_settings, env_settings, dotenv_settings, file_secret_settings
        )
