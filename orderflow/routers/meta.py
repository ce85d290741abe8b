from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from orderflow.container import Container
from orderflow.core.database import get_db
from orderflow.core.errors import ProviderError, ValidationError
from orderflow.deps import Identity, get_container, get_current_identity, require_tenant_owner
from orderflow.services.credentials import exchange_credentials

router = APIRouter(prefix="/api/meta", tags=["meta"])


class ExchangeTokenRequest(BaseModel):
    code: str
    tenant_id: int


@router.post("/exchange-token")
def exchange_token(
    payload: ExchangeTokenRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    require_tenant_owner(db, identity, payload.tenant_id)
    try:
        account = exchange_credentials(
            db,
            client=container.graph,
            encryption=container.encryption,
            tenant_id=payload.tenant_id,
            code=payload.code,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return {
        "success": True,
        "waba_id": account.waba_id,
        "phone_number_id": account.phone_number_id,
        "display_phone_number": account.display_phone_number,
        "display_name": account.display_name,
        "status": account.status,
    }
