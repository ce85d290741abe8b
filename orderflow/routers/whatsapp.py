from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from orderflow.container import Container
from orderflow.core.database import get_db
from orderflow.core.errors import AuthError, NotFoundError, ProviderError
from orderflow.deps import get_container, get_current_tenant
from orderflow.models.tenant import Tenant

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])


@router.get("/status")
def account_status(
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    return container.gateway.get_account_status(db, tenant.id)


@router.post("/health-check")
def health_check(
    tenant: Tenant = Depends(get_current_tenant),
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    try:
        container.gateway.health_check(db, tenant.id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=409, detail=f"Credential rejected: {exc}") from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return container.gateway.get_account_status(db, tenant.id)
