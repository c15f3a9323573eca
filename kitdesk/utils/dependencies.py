"""
Request-scoped dependencies.

Identity is supplied by the fronting identity provider as request headers;
these dependencies turn them into an explicit BookingContext.
"""

from typing import List, Optional

from fastapi import Depends, Header, HTTPException, status

from ..schemas.booking import BookingContext, UserGroup
from ..services.snipeit_client import get_snipeit_client


def get_custody_client():
    return get_snipeit_client()


def _parse_bypass(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def _build_context(
    client,
    user_email: str,
    user_name: Optional[str],
    external_user_id: Optional[int],
    is_staff: bool,
    is_admin: bool,
    bypass: Optional[str]
) -> BookingContext:
    groups = []
    if external_user_id and client is not None:
        groups = [UserGroup(**g) for g in client.get_user_groups(external_user_id)]

    flags = _parse_bypass(bypass)
    return BookingContext(
        user_name=user_name or user_email,
        user_email=user_email,
        external_user_id=external_user_id,
        groups=groups,
        is_staff=is_staff or is_admin,
        is_admin=is_admin,
        bypass_capacity="capacity" in flags,
        bypass_closed="closed" in flags,
        bypass_rules="rules" in flags
    )


def get_booking_context(
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_external_user_id: Optional[int] = Header(None),
    x_staff: bool = Header(False),
    x_admin: bool = Header(False),
    x_bypass: Optional[str] = Header(None),
    client=Depends(get_custody_client)
) -> BookingContext:
    """
    Required context for write endpoints.

    Plain def: the group lookup is a blocking Snipe-IT call, so FastAPI runs
    this in its threadpool.
    """
    if not x_user_email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Email header is required"
        )
    return _build_context(client, x_user_email, x_user_name, x_external_user_id, x_staff, x_admin, x_bypass)


def get_optional_context(
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_staff: bool = Header(False),
    x_admin: bool = Header(False),
    x_bypass: Optional[str] = Header(None)
) -> Optional[BookingContext]:
    """Read endpoints work anonymously; staff/admin headers only unlock bypass flags"""
    if not x_user_email:
        return None
    return _build_context(None, x_user_email, x_user_name, None, x_staff, x_admin, x_bypass)


def require_staff(ctx: BookingContext = Depends(get_booking_context)) -> BookingContext:
    if not ctx.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required"
        )
    return ctx
