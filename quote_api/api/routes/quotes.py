"""Quote creation and lookup endpoints."""

from fastapi import APIRouter, Depends, Header, Request, Response, status

from quote_api.api.deps import get_coordinator, get_store
from quote_api.core.config import settings
from quote_api.core.errors import QuoteNotFoundError
from quote_api.core.idempotency import IdempotencyStore
from quote_api.core.rate_limit import limiter
from quote_api.schemas.quote import ErrorOut, Quote, QuoteRequest
from quote_api.services.coordinator import RequestCoordinator

router = APIRouter(prefix="/quotes", tags=["quotes"])

JSON_MEDIA_TYPE = "application/json"


@router.post(
    "",
    response_model=Quote,
    status_code=status.HTTP_201_CREATED,
    responses={
        200: {"model": Quote, "description": "Replay of an earlier identical request"},
        400: {"model": ErrorOut},
        409: {"model": ErrorOut},
    },
)
@limiter.limit(settings.QUOTE_RATE_LIMIT)
async def create_quote(
    payload: QuoteRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    coordinator: RequestCoordinator = Depends(get_coordinator),
) -> Response:
    """Create a quote, or replay the quote already created for this Idempotency-Key."""

    result = await coordinator.handle(idempotency_key, payload)
    return Response(
        content=result.body,
        status_code=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        media_type=JSON_MEDIA_TYPE,
        headers={"Idempotency-Replayed": "false" if result.created else "true"},
    )


@router.get("/{quote_id}", response_model=Quote, responses={404: {"model": ErrorOut}})
async def get_quote(
    quote_id: str,
    store: IdempotencyStore = Depends(get_store),
) -> Response:
    quote = await store.get_quote(quote_id)
    if quote is None:
        raise QuoteNotFoundError(f"Quote {quote_id} not found.")
    return Response(content=quote.to_json(), media_type=JSON_MEDIA_TYPE)
