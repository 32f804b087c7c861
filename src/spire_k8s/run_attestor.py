#!/usr/bin/env python
import os
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=log_level)
    logger.info("SPIRE node attestor, start running!")

    from src.spire_k8s.attestor.core import AttestationError
    from src.spire_k8s.attestor.services import cancel_on_signal, run_attestation
    from src.spire_k8s.config import AttestorConfig

    try:
        config = AttestorConfig()
    except ValidationError as e:
        logger.error(f"attestor 配置无效: {e}")
        sys.exit(2)

    stop_event = threading.Event()
    cancel_on_signal(stop_event)
    try:
        doc = run_attestation(config, stop_event=stop_event)
    except AttestationError as e:
        logger.error(f"身份证明失败: {e}")
        sys.exit(1)

    logger.info(f"身份文档已就绪: key={doc.key_path}, cert={doc.cert_path}")
