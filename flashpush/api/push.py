"""Flash offer push endpoints."""

import uuid

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from flashpush.core.errors import ErrorCode, FlashPushError
from flashpush.core.geo import METERS_PER_MILE, GeoPoint
from flashpush.core.logging import get_logger
from flashpush.core.security import sanitize_object
from flashpush.dependencies import (
    BearerToken,
    Config,
    CurrentCaller,
    DBSession,
    GatewayFactory,
    Monitoring,
)
from flashpush.models.venue import Venue
from flashpush.schemas.push import ErrorResponse, PushRequest, PushResponse, ReachResponse
from flashpush.services.audience import resolve
from flashpush.services.orchestrator import FlashOfferPushService

logger = get_logger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@router.post("/flash-offers/push", response_model=PushResponse, responses=ERROR_RESPONSES)
async def send_flash_offer_push(
    body: PushRequest,
    db: DBSession,
    config: Config,
    token: BearerToken,
    gateway_factory: GatewayFactory,
    monitoring: Monitoring,
) -> JSONResponse:
    """
    Push a flash offer to nearby users.

    Idempotent: once an offer has been delivered, further calls return
    success with sentCount=0 and send nothing. With dryRun the audience is
    resolved and the batch plan returned, but nothing is sent or recorded.
    """
    service = FlashOfferPushService(
        db,
        config=config,
        gateway_factory=gateway_factory,
        monitoring=monitoring,
    )
    result = await service.run(body.offer_id, token, dry_run=body.dry_run)

    response = PushResponse.model_validate(result.to_dict())
    return JSONResponse(sanitize_object(response.model_dump(by_alias=True, exclude_none=True)))


@router.get("/venues/{venue_id}/reach", response_model=ReachResponse, responses=ERROR_RESPONSES)
async def venue_reach(
    venue_id: uuid.UUID,
    db: DBSession,
    caller: CurrentCaller,
    radius_meters: float = Query(default=METERS_PER_MILE, gt=0, le=50_000),
    favorites_only: bool = Query(default=False),
) -> ReachResponse:
    """
    Preview how many users an offer from this venue would reach.

    Uses the same candidate query as dispatch, before preference filtering.
    """
    venue = await db.get(Venue, venue_id)
    if venue is None:
        raise FlashPushError(ErrorCode.VENUE_NOT_FOUND, "Venue not found")
    if not venue.has_location:
        raise FlashPushError(ErrorCode.INVALID_REQUEST, "Venue location not available")

    candidates = await resolve(
        db,
        venue.id,
        GeoPoint(venue.latitude, venue.longitude),
        radius_meters,
        favorites_only=favorites_only,
    )
    logger.bind(venue_id=str(venue_id), caller=caller.user_id, candidates=len(candidates)).info(
        "venue_reach_previewed"
    )
    return ReachResponse(venue_id=str(venue_id), candidate_count=len(candidates))
