"""
节点身份证明的核心逻辑实现。
包括生成 EC 私钥、构造节点 CSR、以及身份文档（私钥 + 证书）的落盘。
"""

import os
import tempfile
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PrivateFormat,
    NoEncryption,
)
from cryptography.x509.oid import NameOID
from loguru import logger

ID_DOC_FILE_NAME = "id-doc"
KEY_FILE_MODE = 0o600
CERT_FILE_MODE = 0o644
ID_DIR_MODE = 0o700

# kube-controller-manager 自动审批节点客户端证书时要求的主体格式
NODE_COMMON_NAME_PREFIX = "system:node:"
NODE_ORGANIZATION = "system:nodes"


class AttestationError(RuntimeError):
    """身份证明流程中的致命错误基类。"""


class ConfigurationError(AttestationError):
    pass


class KeyGenerationError(AttestationError):
    pass


class SerializationError(AttestationError):
    pass


class SigningError(AttestationError):
    pass


class StorageError(AttestationError):
    pass


def generate_private_key() -> ec.EllipticCurvePrivateKey:
    """
    生成 P-256 椭圆曲线私钥。
    :return: EC 私钥对象。
    :raises KeyGenerationError: 如果生成失败。
    """
    try:
        return ec.generate_private_key(ec.SECP256R1())
    except Exception as e:
        raise KeyGenerationError(f"生成 ECDSA 私钥失败: {e}") from e


def serialize_private_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    """
    将私钥编码为 PEM（"EC PRIVATE KEY" 块）。
    :raises SerializationError: 如果编码失败。
    """
    try:
        return key.private_bytes(
            encoding=Encoding.PEM,
            format=PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=NoEncryption(),
        )
    except Exception as e:
        raise SerializationError(f"编码 ECDSA 私钥失败: {e}") from e


def _write_temp_file(path: Path, data: bytes, mode: int) -> str:
    """
    在目标文件同目录下写入临时文件（写入内容之前设置权限），返回临时文件路径。
    调用方负责重命名；失败时临时文件已被清理。
    :raises StorageError: 如果目录不存在、权限不足等。
    """
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        raise StorageError(f"写入文件 {path} 失败: {e}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        _discard(tmp_name)
        raise StorageError(f"写入文件 {path} 失败: {e}") from e
    return tmp_name


def _discard(tmp_name: str) -> None:
    # 尽力清理临时文件
    try:
        os.unlink(tmp_name)
    except OSError:
        pass


def write_file_atomic(path: Path, data: bytes, mode: int) -> None:
    """
    通过临时文件 + 重命名的方式原子写入文件。
    :raises StorageError: 如果目录不存在、权限不足等。
    """
    path = Path(path)
    tmp_name = _write_temp_file(path, data, mode)
    try:
        os.replace(tmp_name, path)
    except OSError as e:
        _discard(tmp_name)
        raise StorageError(f"写入文件 {path} 失败: {e}") from e


def generate_and_store_private_key(path: Path) -> ec.EllipticCurvePrivateKey:
    """
    生成私钥并以仅属主可读写（0600）的权限写入指定路径。
    :param path: 私钥文件路径，已存在时会被覆盖。
    :return: 生成的私钥对象，供后续签名 CSR 使用。
    """
    key = generate_private_key()
    write_file_atomic(Path(path), serialize_private_key(key), KEY_FILE_MODE)
    logger.debug(f"私钥已写入: {path}")
    return key


def build_node_csr(key: ec.EllipticCurvePrivateKey, agent_name: str) -> bytes:
    """
    构造并签名节点 CSR（DER 编码）。

    主体必须严格为 O=system:nodes, CN=system:node:<agent_name>，且不得携带任何
    DNS 名称或 IP 地址（SAN），否则集群的自动审批不会生效。
    :param key: 用于签名的 EC 私钥。
    :param agent_name: 节点代理名称。
    :return: DER 编码的 CSR。
    :raises SigningError: 如果签名失败。
    """
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, NODE_ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, NODE_COMMON_NAME_PREFIX + agent_name),
        ]
    )
    try:
        csr = x509.CertificateSigningRequestBuilder().subject_name(subject).sign(key, hashes.SHA256())
        return csr.public_bytes(Encoding.DER)
    except Exception as e:
        raise SigningError(f"生成证书签名请求失败: {e}") from e


def encode_csr_pem(csr_der: bytes) -> bytes:
    """将 DER 编码的 CSR 包装为 PEM "CERTIFICATE REQUEST" 块。"""
    try:
        csr = x509.load_der_x509_csr(csr_der)
    except ValueError as e:
        raise SerializationError(f"无效的 CSR: {e}") from e
    return csr.public_bytes(Encoding.PEM)


class IdentityStore:
    """
    身份文档存储：<id_dir>/id-doc.key 与 <id_dir>/id-doc.crt。

    私钥先写入暂存文件，证书获批后 commit() 依次将私钥、证书重命名到最终位置；
    证书文件最后更新，证书出现（或被替换）即表示新的身份文档已完整。
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    @property
    def key_path(self) -> Path:
        return self.directory / f"{ID_DOC_FILE_NAME}.key"

    @property
    def cert_path(self) -> Path:
        return self.directory / f"{ID_DOC_FILE_NAME}.crt"

    @property
    def staged_key_path(self) -> Path:
        return self.directory / f".{ID_DOC_FILE_NAME}.key.pending"

    def ensure_directory(self) -> None:
        """如目录不存在则以 0700 权限创建。"""
        try:
            self.directory.mkdir(mode=ID_DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"创建身份文档目录 {self.directory} 失败: {e}") from e

    def commit(self, certificate: bytes) -> None:
        """
        写入证书并将暂存私钥移动到最终位置。
        :param certificate: 集群签发的证书字节（原样写入）。
        :raises StorageError: 如果写入或重命名失败。
        """
        # 私钥先就位，证书最后替换：证书文件更新即表示新的身份文档已完整。
        # 两次重命名之间，已有的旧证书会短暂与新私钥并存。
        tmp_cert = _write_temp_file(self.cert_path, certificate, CERT_FILE_MODE)
        try:
            if self.staged_key_path.exists():
                os.replace(self.staged_key_path, self.key_path)
            os.replace(tmp_cert, self.cert_path)
        except OSError as e:
            _discard(tmp_cert)
            raise StorageError(f"写入身份文档 {self.cert_path} 失败: {e}") from e

        logger.info(f"身份文档已写入: {self.cert_path}")
        _log_certificate_info(certificate)


def _log_certificate_info(certificate: bytes) -> None:
    """打印证书主体、序列号、有效期与指纹。"""
    try:
        cert = x509.load_pem_x509_certificate(certificate)
    except ValueError as e:
        logger.debug(f"解析证书信息失败：{e}")
        return
    subject = cert.subject.rfc4514_string()
    issuer = cert.issuer.rfc4514_string()
    serial = format(cert.serial_number, "x")
    not_after = cert.not_valid_after_utc
    fp = cert.fingerprint(hashes.SHA256()).hex()
    logger.info(
        f"证书信息: subject={subject}, issuer={issuer}, serial=0x{serial}, "
        f"not_after={not_after}, sha256={fp}"
    )


def load_private_key(path: str | Path) -> ec.EllipticCurvePrivateKey:
    """从 PEM 文件读取 EC 私钥。"""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise StorageError(f"读取私钥 {path} 失败: {e}") from e
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise SerializationError(f"{path} 不是 EC 私钥")
    return key
