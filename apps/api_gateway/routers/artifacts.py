"""
Скачивание артефактов по подписанной ссылке (HMAC, ограниченный срок жизни).
"""

from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from apps.api_gateway.deps import ctx_dep
from smartmeet_pipeline.common.errors import ErrCode
from smartmeet_pipeline.runtime import PipelineContext

router = APIRouter()


@router.get("/artifacts/{key:path}")
def artifact_download(
    key: str,
    expires: int = Query(...),
    sig: str = Query(..., min_length=1),
    ctx: PipelineContext = Depends(ctx_dep),
) -> Response:
    if not ctx.storage.verify_signed_url(key, expires=expires, sig=sig):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": ErrCode.UNAUTHORIZED, "message": "Invalid or expired link"},
        )
    content = ctx.storage.download(key)
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)
