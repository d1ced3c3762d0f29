"""Post API routes: helper toggle and proximity announcement."""

from fastapi import APIRouter, Depends, HTTPException

from nearhelp.auth.dependencies import CurrentIdentity, get_current_user
from nearhelp.errors import NearHelpError
from nearhelp.schemas.post import AnnounceResult, HelperToggleRead, HelperToggleRequest
from nearhelp.services.delivery import DeliveryDispatcher, get_dispatcher

router = APIRouter()


@router.post("/posts/{post_id}/toggle-helper", response_model=HelperToggleRead)
async def toggle_helper(
    post_id: str,
    body: HelperToggleRequest,
    identity: CurrentIdentity = Depends(get_current_user),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Owner adds or removes a helper. 409 when every slot is taken."""
    try:
        result = await dispatcher.toggle_helper(
            post_id, body.buyer_id, actor_id=identity.user_id
        )
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return HelperToggleRead(
        message="Helper added" if result.added else "Helper removed",
        added=result.added,
        helper_ids=result.helper_ids,
        helper_count=result.helper_count,
        post_status=result.post_status,
    )


@router.post("/posts/{post_id}/announce", response_model=AnnounceResult)
async def announce_post(
    post_id: str,
    identity: CurrentIdentity = Depends(get_current_user),
    dispatcher: DeliveryDispatcher = Depends(get_dispatcher),
):
    """Notify every user whose notification radius covers the post."""
    try:
        notified = await dispatcher.announce_post(post_id, actor_id=identity.user_id)
    except NearHelpError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return AnnounceResult(post_id=post_id, notified=notified)
