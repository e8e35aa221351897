from fastapi import APIRouter, Depends, HTTPException, status

from trove.core.security import require_admin
from trove.schemas.admin import DeadLetterOut, DeadLetterRequest, ItemKind, ReinjectOut
from trove.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter(dependencies=[Depends(require_admin)])

_DEAD_LETTER = {
    "raw_item": ("dead_letter_raw_item", "get_raw_item"),
    "extracted_post": ("dead_letter_post", "get_extracted_post"),
    "media_download": ("dead_letter_media_download", "get_media_download"),
}


@router.post("/items/{kind}/{item_id}/dead-letter", response_model=DeadLetterOut)
async def dead_letter_item(
    kind: ItemKind,
    item_id: str,
    payload: DeadLetterRequest | None = None,
    repository=Depends(get_repository),
) -> DeadLetterOut:
    reason = payload.reason if payload is not None else DeadLetterRequest().reason
    mark_name, get_name = _DEAD_LETTER[kind]

    try:
        item = await getattr(repository, get_name)(item_id)
        marked = await getattr(repository, mark_name)(item_id, reason)
        if not marked:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{kind} is already {item.status}",
            )
        item = await getattr(repository, get_name)(item_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return DeadLetterOut(kind=kind, id=item.id, status=item.status, attempts=item.attempts, last_error=item.last_error)


@router.post("/raw-items/{raw_item_id}/reinject", response_model=ReinjectOut, status_code=status.HTTP_201_CREATED)
async def reinject_raw_item(raw_item_id: str, repository=Depends(get_repository)) -> ReinjectOut:
    try:
        new_id = await repository.reinject_raw_item(raw_item_id)
        item = await repository.get_raw_item(new_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReinjectOut(id=item.id, retry_of=raw_item_id, source=item.source, status=item.status)
