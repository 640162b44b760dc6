"""
Batch scheduling routes.

The authenticated user is the organizer: every endpoint scopes its reads
and writes to `claims["sub"]`.
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from coffeechat.auth.verify import auth_dependency
from coffeechat.config import settings
from coffeechat.features.batch_scheduling.domain.errors import (
    BatchCancelledError,
    CalendarProviderError,
    ConflictError,
    ConsistencyError,
    ReservationNotFoundError,
    SchedulingError,
    SchedulingInputError,
    SuggestionNotFoundError,
)
from coffeechat.features.batch_scheduling.domain.models import BatchOptions, TimeInterval
from coffeechat.features.batch_scheduling.services import (
    batch_scheduling_service,
    reservation_service,
)
from coffeechat.infrastructure.observability.logging import get_logger
from coffeechat.models.api.scheduling_request import ConfirmSlotRequest, GenerateBatchRequest
from coffeechat.models.api.scheduling_response import (
    BatchDetailResponse,
    BatchSuggestionsResponse,
    CancelBatchResponse,
    CleanupResponse,
    ClearSuggestionsResponse,
    ContactSuggestionsResponse,
    ReservationResponse,
    SuggestedSlotResponse,
    SuggestionSetResponse,
    UnsatisfiedContactResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/scheduling", tags=["scheduling"])


def _organizer_id(claims: dict) -> str:
    organizer_id = claims.get("sub")
    if not organizer_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User ID not found in claims",
        )
    return organizer_id


def _to_http_error(error: SchedulingError) -> HTTPException:
    """Map scheduling failures onto HTTP status codes."""
    detail: dict = {"error": error.error_code, "message": error.message}

    if isinstance(error, SchedulingInputError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    if isinstance(error, SuggestionNotFoundError | ReservationNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(error, ConflictError):
        detail["reason"] = error.reason
        detail["remaining_slots"] = [
            SuggestedSlotResponse.from_domain(slot).model_dump(mode="json")
            for slot in error.remaining_slots
        ]
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, BatchCancelledError | ConsistencyError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(error, CalendarProviderError):
        detail["transient"] = error.transient
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


# =========================================================================
# BATCHES
# =========================================================================


@router.post(
    "/batches",
    response_model=BatchSuggestionsResponse,
    summary="Generate suggestions for a batch of contacts",
)
async def generate_batch(
    request: GenerateBatchRequest, claims: dict = Depends(auth_dependency)
) -> BatchSuggestionsResponse:
    organizer_id = _organizer_id(claims)

    date_range = None
    if request.start_date or request.end_date:
        start = request.start_date
        end = request.end_date
        if start is None:
            start = end - timedelta(days=settings.DEFAULT_DATE_RANGE_DAYS)
        if end is None:
            end = start + timedelta(days=settings.DEFAULT_DATE_RANGE_DAYS)
        date_range = TimeInterval(start, end)

    overrides = request.options.model_dump() if request.options else {}
    options = BatchOptions.from_defaults(settings.get_scheduling_defaults(), **overrides)

    try:
        result = await batch_scheduling_service.generate_batch_suggestions(
            organizer_id,
            request.contact_ids,
            request.duration_minutes,
            request.slots_per_contact,
            date_range=date_range,
            options=options,
        )
    except SchedulingError as e:
        logger.warning(
            "Batch generation failed",
            organizer_id=organizer_id,
            error_code=e.error_code,
            error=e.message,
        )
        raise _to_http_error(e) from e

    return BatchSuggestionsResponse(
        batch_id=result.batch_id,
        per_contact=[
            ContactSuggestionsResponse(
                contact_id=entry.contact_id,
                suggested_slots=[
                    SuggestedSlotResponse.from_domain(slot) for slot in entry.suggested_slots
                ],
            )
            for entry in result.per_contact
        ],
        unsatisfied_contacts=[
            UnsatisfiedContactResponse(contact_id=item.contact_id, reason=item.reason)
            for item in result.unsatisfied_contacts
        ],
        statistics=result.statistics,
    )


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
async def get_batch(batch_id: str, claims: dict = Depends(auth_dependency)) -> BatchDetailResponse:
    """Suggestion sets and reservations stored for one batch."""
    organizer_id = _organizer_id(claims)
    try:
        suggestion_sets, reservations = await reservation_service.list_batch(
            organizer_id, batch_id
        )
    except SchedulingError as e:
        raise _to_http_error(e) from e

    return BatchDetailResponse(
        batch_id=batch_id,
        suggestion_sets=[SuggestionSetResponse.from_domain(item) for item in suggestion_sets],
        reservations=[ReservationResponse.from_domain(item) for item in reservations],
    )


@router.post(
    "/batches/{batch_id}/confirm",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Confirm one suggested slot",
    description="""
    Reserve one of the slots suggested to a contact.

    Returns 409 with the contact's still-selectable slots when the chosen
    slot expired or was taken by a concurrent confirmation.
    """,
)
async def confirm_slot(
    batch_id: str, request: ConfirmSlotRequest, claims: dict = Depends(auth_dependency)
) -> ReservationResponse:
    organizer_id = _organizer_id(claims)
    try:
        reservation = await reservation_service.confirm_slot(
            organizer_id,
            request.contact_id,
            batch_id,
            TimeInterval(request.start, request.end),
        )
    except SchedulingError as e:
        raise _to_http_error(e) from e
    return ReservationResponse.from_domain(reservation)


@router.delete("/batches/{batch_id}", response_model=ClearSuggestionsResponse)
async def clear_batch(
    batch_id: str, claims: dict = Depends(auth_dependency)
) -> ClearSuggestionsResponse:
    """Withdraw the batch's active suggestions. Reservations are untouched."""
    organizer_id = _organizer_id(claims)
    cleared = await reservation_service.clear_suggestions(organizer_id, batch_id)
    return ClearSuggestionsResponse(batch_id=batch_id, cleared=cleared)


@router.post("/batches/{batch_id}/cancel", response_model=CancelBatchResponse)
async def cancel_batch(batch_id: str, claims: dict = Depends(auth_dependency)):
    """Stop a batch that is still allocating."""
    _organizer_id(claims)
    cancelled = batch_scheduling_service.cancel_batch(batch_id)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "batch_not_running", "message": f"Batch {batch_id} is not running"},
        )
    return CancelBatchResponse(batch_id=batch_id, cancelled=True)


# =========================================================================
# RESERVATIONS
# =========================================================================


@router.post("/reservations/{reservation_id}/confirm", response_model=ReservationResponse)
async def confirm_reservation(reservation_id: str, claims: dict = Depends(auth_dependency)):
    organizer_id = _organizer_id(claims)
    try:
        reservation = await reservation_service.mark_reservation_confirmed(
            organizer_id, reservation_id
        )
    except SchedulingError as e:
        raise _to_http_error(e) from e
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(reservation_id: str, claims: dict = Depends(auth_dependency)):
    organizer_id = _organizer_id(claims)
    try:
        reservation = await reservation_service.cancel_reservation(organizer_id, reservation_id)
    except SchedulingError as e:
        raise _to_http_error(e) from e
    return ReservationResponse.from_domain(reservation)


# =========================================================================
# MAINTENANCE
# =========================================================================


@router.post("/maintenance/cleanup", response_model=CleanupResponse)
async def run_cleanup(claims: dict = Depends(auth_dependency)) -> CleanupResponse:
    """Run the expiry and retention pass for the calling organizer now."""
    organizer_id = _organizer_id(claims)
    result = await reservation_service.run_expiry_cleanup(organizer_id)
    return CleanupResponse(
        organizer_id=result.organizer_id,
        expired_pending_reservations=result.expired_pending_reservations,
        expired_confirmed_reservations=result.expired_confirmed_reservations,
        expired_suggestion_sets=result.expired_suggestion_sets,
        deleted_suggestion_sets=result.deleted_suggestion_sets,
        deleted_reservations=result.deleted_reservations,
        retention_skipped=result.retention_skipped,
    )
