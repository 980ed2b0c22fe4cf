"""
FastAPI layer exposing the cutout pipeline.

Endpoints:
 - GET /health
 - POST /remove-bg       (download by URL, upload the PNG to R2)
 - POST /remove-bg/raw   (image bytes in, PNG bytes out)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import uuid
from typing import Optional
from urllib.parse import urljoin

import boto3
from botocore.client import Config as BotoConfig
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .errors import InvalidImageError, SegmentationError
from .options import ProcessingOptions
from .pipeline import CutoutResult, run_pipeline
from .preprocessing import decode_image_bytes
from .segmenter import TorchScriptSegmenter

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.segmenter = None
    if settings.segmenter_model_path is not None:
        segmenter = TorchScriptSegmenter(
            settings.segmenter_model_path,
            max_long_edge=config.quality_to_long_edge(settings.default_quality_mode, settings),
        )
        try:
            await segmenter.initialize()
            app.state.segmenter = segmenter
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to load segmenter, learned strategy disabled: %s", exc)
    yield
    if app.state.segmenter is not None:
        app.state.segmenter.dispose()
        app.state.segmenter = None


app = FastAPI(title="Cutout Background Removal Service", version="0.1.0", lifespan=lifespan)


class RemoveBgRequest(BaseModel):
    imageUrl: HttpUrl
    strategy: Optional[str] = None
    qualityMode: Optional[str] = None
    aggressiveMode: Optional[bool] = None
    edgeSmoothRadius: Optional[int] = None
    noiseReductionPasses: Optional[int] = None


class RemoveBgResponse(BaseModel):
    outputUrl: HttpUrl
    strategy: str
    degraded: bool
    notice: Optional[str] = None


def _get_s3_client():
    required = [
        settings.r2_endpoint,
        settings.r2_access_key_id,
        settings.r2_secret_access_key,
        settings.r2_bucket_name,
    ]
    if any(v is None for v in required):
        raise RuntimeError("R2 configuration is incomplete; check env vars.")
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint,
        config=BotoConfig(signature_version="s3v4"),
    )


def _build_public_url(key: str) -> str:
    if settings.r2_public_base_url:
        return urljoin(settings.r2_public_base_url.rstrip("/") + "/", key)
    client = _get_s3_client()
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.r2_bucket_name, "Key": key},
        ExpiresIn=3600,
    )


def _download_image(url: str) -> bytes:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content


def _upload_png(png_bytes: bytes) -> str:
    key = f"cutout/{uuid.uuid4()}.png"
    client = _get_s3_client()
    client.put_object(
        Bucket=settings.r2_bucket_name,
        Key=key,
        Body=png_bytes,
        ContentType="image/png",
    )
    return _build_public_url(key)


def _build_options(
    quality_mode: Optional[str],
    aggressive_mode: Optional[bool] = None,
    edge_smooth_radius: Optional[int] = None,
    noise_reduction_passes: Optional[int] = None,
) -> ProcessingOptions:
    try:
        return ProcessingOptions(
            quality_mode=quality_mode or settings.default_quality_mode,
            aggressive_mode=bool(aggressive_mode),
            edge_smooth_radius=edge_smooth_radius,
            noise_reduction_passes=noise_reduction_passes,
        )
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve


async def _run(request: Request, image_bytes: bytes, strategy: Optional[str], options: ProcessingOptions) -> CutoutResult:
    segmenter = getattr(request.app.state, "segmenter", None)
    try:
        pixels = await asyncio.to_thread(decode_image_bytes, image_bytes)
        return await run_pipeline(
            pixels,
            strategy=strategy or settings.default_strategy,
            options=options,
            segmenter=segmenter,
            settings=settings,
        )
    except InvalidImageError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SegmentationError as exc:
        logger.warning("Segmentation failed: %s", exc)
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve
    except Exception as exc:  # noqa: BLE001
        logger.exception("Background removal failed: %s", exc)
        raise HTTPException(status_code=500, detail="Background removal failed") from exc


@app.get("/health")
def health(request: Request):
    segmenter = getattr(request.app.state, "segmenter", None)
    return {"status": "ok", "segmenter": bool(segmenter is not None and segmenter.is_ready)}


@app.post("/remove-bg", response_model=RemoveBgResponse)
async def remove_bg(body: RemoveBgRequest, request: Request):
    try:
        image_bytes = await asyncio.to_thread(_download_image, str(body.imageUrl))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to download image: %s", exc)
        raise HTTPException(status_code=400, detail="Could not download image") from exc

    options = _build_options(
        body.qualityMode, body.aggressiveMode, body.edgeSmoothRadius, body.noiseReductionPasses
    )
    result = await _run(request, image_bytes, body.strategy, options)

    png_bytes = await asyncio.to_thread(result.to_png_bytes)
    try:
        output_url = await asyncio.to_thread(_upload_png, png_bytes)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to upload cutout to R2: %s", exc)
        raise HTTPException(status_code=500, detail="Upload to storage failed") from exc

    return RemoveBgResponse(
        outputUrl=output_url,
        strategy=result.strategy,
        degraded=result.degraded,
        notice=result.notice,
    )


@app.post("/remove-bg/raw")
async def remove_bg_raw(
    request: Request,
    strategy: Optional[str] = None,
    qualityMode: Optional[str] = None,
    aggressiveMode: Optional[bool] = None,
):
    image_bytes = await request.body()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Request body must contain image bytes")
    options = _build_options(qualityMode, aggressiveMode)
    result = await _run(request, image_bytes, strategy, options)
    png_bytes = await asyncio.to_thread(result.to_png_bytes)
    return Response(
        content=png_bytes,
        media_type="image/png",
        headers={
            "X-Cutout-Strategy": result.strategy,
            "X-Cutout-Degraded": "true" if result.degraded else "false",
        },
    )
