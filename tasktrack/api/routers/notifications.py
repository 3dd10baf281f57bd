from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from tasktrack.api.deps import CurrentPrincipal
from tasktrack.api.responses import Envelope, PageEnvelope, ok, paged
from tasktrack.domain.models import NotificationRead
from tasktrack.services.notification_service import NotificationService

router = APIRouter()


def get_notification_service() -> NotificationService:
    return NotificationService()


Service = Annotated[NotificationService, Depends(get_notification_service)]


@router.get("", response_model=PageEnvelope[NotificationRead])
def list_notifications(
    principal: CurrentPrincipal,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    unread: bool = False,
) -> dict[str, object]:
    rows, total = service.list_notifications(principal, unread_only=unread, page=page, limit=limit)
    return paged(
        "Notifications retrieved successfully",
        [NotificationRead.model_validate(row) for row in rows],
        page=page,
        limit=limit,
        total=total,
    )


@router.patch("/read-all", response_model=Envelope[dict[str, int]])
def mark_all_read(principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    updated = service.mark_all_read(principal)
    return ok("All notifications marked as read", {"updated": updated})


@router.patch("/{notification_id}/read", response_model=Envelope[NotificationRead])
def mark_read(notification_id: str, principal: CurrentPrincipal, service: Service) -> dict[str, object]:
    return ok("Notification marked as read", service.mark_read(principal, notification_id))
