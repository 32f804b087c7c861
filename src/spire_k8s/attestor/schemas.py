"""
文件功能：
    定义节点身份证明流程相关的公开数据模型（Pydantic）。

公开接口：
    - AttestationState: 身份证明流程的状态
    - IdentityDocument: 最终落盘的身份文档（私钥 + 证书）路径
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class AttestationState(str, Enum):
    """身份证明流程状态：Init → KeySaved → RequestSubmitted → Watching → Approved → Terminal。"""

    INIT = "Init"
    KEY_SAVED = "KeySaved"
    REQUEST_SUBMITTED = "RequestSubmitted"
    WATCHING = "Watching"
    APPROVED = "Approved"
    TERMINAL = "Terminal"
    FATAL = "Fatal"


class IdentityDocument(BaseModel):
    """写入身份目录的身份文档。"""

    agent_name: str = Field(description="写入证书 CN 的节点代理名称")
    request_name: str = Field(description="提交到集群的 CSR 资源名称")
    key_path: str = Field(description="PEM 格式 EC 私钥路径（仅属主可读写）")
    cert_path: str = Field(description="PEM 格式证书路径（所有人可读）")
