#!/usr/bin/env python
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logger.remove()
    logger.add(sys.stderr, level=log_level)
    logger.info("SPIRE sidecar injector, start running!")

    from src.spire_k8s.config import WebhookConfig
    from src.spire_k8s.main import create_app

    try:
        config = WebhookConfig()
    except ValidationError as e:
        logger.error(f"webhook 配置无效: {e}")
        sys.exit(2)

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        ssl_certfile=config.cert_file,
        ssl_keyfile=config.key_file,
        log_level=log_level.lower(),
    )
