import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, ExpiredSignatureError
from sqlalchemy.ext.asyncio import AsyncSession

from careflow.database import get_db
from careflow import crud, models, schemas
from careflow.utils import create_access_token, decode_access_token, token_payload_for

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

SAAS_ADMIN = "saas_admin"
PRACTICE_ADMIN = "practice_admin"
PROVIDER = "provider"
NURSE = "nurse"
PATIENT = "patient"

STAFF_ROLES = (PRACTICE_ADMIN, PROVIDER, NURSE)


async def user_from_token(db: AsyncSession, token: str) -> Optional[models.User]:
    """Resolve an active user from a bearer token, or None."""
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None

    email = payload.get("sub")
    if email is None:
        return None

    user = await crud.get_user_by_email(db, email)
    if not user or not user.is_active:
        return None

    if user.tenant_id is not None:
        tenant = await db.get(models.Tenant, user.tenant_id)
        if tenant is None or tenant.status != "active":
            return None

    return user


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    user = await user_from_token(db, token)
    if not user:
        raise credentials_exception
    return user


def require_roles(*roles: str):
    """Dependency that only lets users with one of ``roles`` through."""

    async def checker(current_user=Depends(get_current_user)):
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not permitted to perform this action"
            )
        return current_user

    return checker


def acting_tenant_id(request: Request, current_user) -> Optional[int]:
    """Tenant a request acts on.

    Tenant users are pinned to their own tenant. SaaS admins may pick one
    with the ``X-Tenant-ID`` header and otherwise act across tenants (None).
    """
    if current_user.role != SAAS_ADMIN:
        return current_user.tenant_id

    header = request.headers.get("X-Tenant-ID")
    if not header:
        return None
    try:
        return int(header)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-ID header")


def require_tenant_id(request: Request, current_user) -> int:
    tenant_id = acting_tenant_id(request, current_user)
    if tenant_id is None:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def validate_tenant_access(resource_tenant_id: Optional[int], current_user) -> bool:
    if current_user.role == SAAS_ADMIN:
        return True
    return resource_tenant_id is not None and resource_tenant_id == current_user.tenant_id


def ensure_tenant_access(resource, current_user, detail: str = "Not found"):
    """Raise 404 for a missing row or one outside the user's tenant."""
    if resource is None or not validate_tenant_access(resource.tenant_id, current_user):
        raise HTTPException(status_code=404, detail=detail)
    return resource


@router.post("/auth/login", response_model=schemas.LoginResponse)
async def login(credentials: schemas.LoginRequest, db: AsyncSession = Depends(get_db)):
    user = await crud.authenticate_user(db, credentials.username, credentials.password)
    if not user:
        raise HTTPException(status_code=401, detail="Incorrect username or password")

    if user.tenant_id is not None:
        tenant = await db.get(models.Tenant, user.tenant_id)
        if tenant is None or tenant.status != "active":
            raise HTTPException(status_code=403, detail="Tenant is suspended")

    access_token = create_access_token(token_payload_for(user))
    logger.info(f"User {user.id} logged in (role={user.role})")

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": user,
    }


@router.get("/api/auth/validate-token", response_model=schemas.UserOut)
async def validate_token(request: Request, db: AsyncSession = Depends(get_db)):
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authentication token is missing")

    if auth_header.startswith("Bearer "):
        token = auth_header.split("Bearer ")[1].strip()
    else:
        token = auth_header.strip()

    try:
        decode_access_token(token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await user_from_token(db, token)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user
