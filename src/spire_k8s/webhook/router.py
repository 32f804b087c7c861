"""
Sidecar 注入 webhook 的 FastAPI 路由定义。
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from . import services
from .core import PatchError

router = APIRouter(tags=["Admission Webhook"])


@router.post("/inject")
async def inject(request: Request) -> JSONResponse:
    """
    接收 API Server 发来的 AdmissionReview，返回带 sidecar 补丁的响应。
    """
    body = await request.body()
    try:
        review = services.review_admission(
            body, request.app.state.patch_builder, request.app.state.sidecar_policy
        )
    except ValueError as e:
        # 请求体无法解析，返回 400
        logger.warning(f"拒绝无效的准入请求: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except PatchError as e:
        logger.error(f"生成补丁失败: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        # 捕获所有未预期的错误并返回 500
        logger.error(f"处理准入请求时发生错误: {e}")
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")

    return JSONResponse(content=review.model_dump(by_alias=True, exclude_none=True))
