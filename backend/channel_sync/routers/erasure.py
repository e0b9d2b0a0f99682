from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from channel_sync.database import get_db
from channel_sync.models.sync import ErasureRequest, ErasureResult
from channel_sync.services.erasure import erase_external_identity

router = APIRouter(prefix="/api/v1/erasure", tags=["Erasure"])


@router.post("/", response_model=ErasureResult)
async def request_erasure(body: ErasureRequest, db: Session = Depends(get_db)):
    """Delete everything held for an external marketplace identity.

    Requests with no matching account are recorded as ``no_match`` and are
    not an error.
    """
    return erase_external_identity(db, body.external_user_id, provider=body.provider)
