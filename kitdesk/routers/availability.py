from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from ..database import get_db
from ..exceptions import ValidationError
from ..schemas.slots import AvailabilityResponse
from ..services.availability import AvailabilityCalculator
from ..utils.dependencies import get_custody_client

router = APIRouter(prefix="/availability", tags=["Availability"])


@router.get("/{model_id}", response_model=AvailabilityResponse)
def get_availability(
    model_id: int = Path(..., gt=0),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    now: bool = Query(False),
    db: Session = Depends(get_db),
    client=Depends(get_custody_client)
):
    """
    Free units of a model.

    Window mode (start + end) counts reservations and checkouts overlapping the window.
    Now mode counts reservations active now plus assets currently in custody.
    free is null when the total cannot be determined.
    """
    calculator = AvailabilityCalculator(db, client)

    if now:
        result = calculator.free_now(model_id)
    else:
        if start is None or end is None:
            raise ValidationError("Provide start and end, or now=true")
        result = calculator.free_in_window(model_id, start, end)

    return AvailabilityResponse(**result.to_dict())
