"""HTTP handlers for history queries and frame analysis."""

import structlog
from aiohttp import web

from ..analysis import AnalysisRecord, HistoryState, HistoryStore, find_record, query_history, summarize
from ..analysis.queries import DEFAULT_PAGE_LIMIT
from ..exceptions import ImagePayloadError, RequestValidationError
from ..vision import VisionProvider
from .validation import is_valid_base64, normalize_base64, parse_int

logger = structlog.get_logger(__name__)

STORE_KEY = web.AppKey("store", HistoryStore)
PROVIDER_KEY = web.AppKey("provider", VisionProvider)
SETTINGS_KEY = web.AppKey("settings", object)

routes = web.RouteTableDef()


@routes.get("/api/health")
async def handle_health(request: web.Request) -> web.Response:
    """Liveness probe; no auth, no rate limit."""
    return web.json_response({"status": "ok", "provider": request.app[PROVIDER_KEY].name})


@routes.get("/api/history")
async def handle_history(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    page = query_history(
        await store.read(),
        camera_id=request.query.get("cameraId") or None,
        limit=parse_int(request.query.get("limit"), DEFAULT_PAGE_LIMIT),
        offset=parse_int(request.query.get("offset"), 0),
        history_max=store.history_max,
    )
    return web.json_response(page.to_dict())


@routes.get("/api/history/{record_id}")
async def handle_history_item(request: web.Request) -> web.Response:
    record = find_record(await request.app[STORE_KEY].read(), request.match_info["record_id"])
    if record is None:
        return web.json_response({"message": "Record not found."}, status=404)
    return web.json_response(record.to_dict())


@routes.get("/api/summary")
async def handle_summary(request: web.Request) -> web.Response:
    summary = summarize(await request.app[STORE_KEY].read())
    return web.json_response(summary.to_dict())


@routes.post("/api/analyze")
async def handle_analyze(request: web.Request) -> web.Response:
    """
    Analyze one camera frame and prepend the result to the history.

    Body: {"base64Image": "<base64 or data URI>", "cameraId": "cam-01"}.
    The store is only touched once the provider has answered.
    """
    settings = request.app[SETTINGS_KEY]

    try:
        body = await request.json()
    except ValueError as e:
        raise RequestValidationError("Request body must be valid JSON.", cause=e) from e
    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object.")

    image = normalize_base64(body.get("base64Image"))
    if not image:
        raise ImagePayloadError("Image not provided.", field="base64Image")
    if not is_valid_base64(image, settings.request_limit_bytes):
        raise ImagePayloadError("Invalid or oversized image.", field="base64Image")

    camera_id = body.get("cameraId")
    if not isinstance(camera_id, str):
        camera_id = None

    payload = await request.app[PROVIDER_KEY].analyze(image)
    record = AnalysisRecord.from_provider_result(payload, camera_id=camera_id)

    def prepend(state: HistoryState) -> HistoryState:
        return state.prepend(record)

    state = await request.app[STORE_KEY].update(prepend)
    logger.info(
        "analysis_recorded",
        id=record.id,
        camera_id=camera_id,
        health_score=record.health_score,
        history_size=len(state.history),
    )
    return web.json_response(record.to_dict())
