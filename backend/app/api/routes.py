from __future__ import annotations

import logging
import secrets
import sqlite3
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException

from backend.app.config import AppSettings
from backend.app.dependencies import get_reconciler, get_settings, get_video_repository
from backend.app.models.catalog_contracts import (
    DeleteVideoResponse,
    NewsletterCatalogResponse,
    RecategorizeRequest,
    RecategorizeResponse,
    vibe_categories,
)
from backend.app.repositories.video_repository import (
    MANUAL_RECATEGORIZATION_REASON,
    VideoRepository,
)
from backend.app.services.catalog_reconciler import CatalogReconciler
from backend.app.services.errors import ReconciliationInProgressError

LOGGER = logging.getLogger("vibe_digest.api")

router = APIRouter()


@router.get(
    "/newsletters",
    response_model=NewsletterCatalogResponse,
    tags=["catalog"],
    operation_id="newsletters_catalog",
)
def newsletters_catalog(
    reconciler: Annotated[CatalogReconciler, Depends(get_reconciler)],
) -> NewsletterCatalogResponse:
    try:
        result = reconciler.run()
    except ReconciliationInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return NewsletterCatalogResponse.from_result(result)


@router.get(
    "/vibes",
    response_model=list[str],
    tags=["catalog"],
    operation_id="vibes_list",
)
def vibes_list() -> list[str]:
    return vibe_categories()


@router.post(
    "/videos/recategorize",
    response_model=RecategorizeResponse,
    tags=["catalog"],
    operation_id="videos_recategorize",
)
def videos_recategorize(
    request: RecategorizeRequest,
    repository: Annotated[VideoRepository, Depends(get_video_repository)],
) -> RecategorizeResponse:
    try:
        updated = repository.update_category(video_id=request.video_id, vibe=request.vibe)
    except sqlite3.Error as exc:
        LOGGER.error("api recategorize_failed video_id=%s error=%s", request.video_id, exc)
        raise HTTPException(status_code=500, detail="Failed to update video category") from exc
    if not updated:
        raise HTTPException(status_code=404, detail=f"Unknown video: {request.video_id}")

    LOGGER.info("api recategorized video_id=%s vibe=%s", request.video_id, request.vibe)
    return RecategorizeResponse(
        ok=True,
        video_id=request.video_id,
        vibe=request.vibe,
        reason=MANUAL_RECATEGORIZATION_REASON,
    )


@router.delete(
    "/videos/{video_id}",
    response_model=DeleteVideoResponse,
    tags=["catalog"],
    operation_id="videos_delete",
)
def videos_delete(
    video_id: str,
    repository: Annotated[VideoRepository, Depends(get_video_repository)],
    settings: Annotated[AppSettings, Depends(get_settings)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> DeleteVideoResponse:
    _require_admin(settings, x_admin_key)
    try:
        deleted = repository.delete(video_id)
    except sqlite3.Error as exc:
        LOGGER.error("api delete_failed video_id=%s error=%s", video_id, exc)
        raise HTTPException(status_code=500, detail="Failed to delete video") from exc
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Unknown video: {video_id}")

    LOGGER.info("api deleted video_id=%s", video_id)
    return DeleteVideoResponse(ok=True, video_id=video_id)


def _require_admin(settings: AppSettings, provided_key: str | None) -> None:
    expected = settings.admin_api_key
    if expected is None:
        return
    if provided_key is None or not secrets.compare_digest(provided_key.strip(), expected):
        raise HTTPException(status_code=401, detail="Admin key required")
