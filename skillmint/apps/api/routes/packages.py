from __future__ import annotations

from decimal import Decimal
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.apps.api.deps import Principal, get_current_principal, get_db
from skillmint.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillmint.apps.api.response import ApiModel, RequestModel, SuccessEnvelope, success_response
from skillmint.core.errors import PackageNotFound
from skillmint.domain.models import Package
from skillmint.persistence.repos import packages as packages_repo
from skillmint.services import packages as packages_service
from skillmint.services.audit import get_request_id, record_event


router = APIRouter(prefix="/packages", tags=["packages"], responses=DEFAULT_ERROR_RESPONSES)

_SLUG_PATTERN = r"^[a-z0-9][a-z0-9-]{1,62}[a-z0-9]$"
# Optional columns a PATCH may clear with an explicit null.
_NULLABLE_FIELDS = {"readme", "icon", "repository_url", "homepage_url"}


class PackageCreateRequest(RequestModel):
    slug: str = Field(pattern=_SLUG_PATTERN)
    version: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=5000)
    readme: str | None = None
    author_name: str | None = Field(default=None, max_length=200)
    license: str = "open-source"
    price_usd: Decimal = Field(default=Decimal("0"), ge=0, max_digits=10, decimal_places=4)
    required_tier: int = Field(default=0, ge=0, le=3)
    category: str = "other"
    maturity: str = "experimental"
    tags: list[str] = Field(default_factory=list, max_length=20)
    icon: str | None = None
    repository_url: str | None = None
    homepage_url: str | None = None

    @field_validator("slug")
    @classmethod
    def reject_id_shaped_slug(cls, value: str) -> str:
        # Installs accept a slug or an internal id, so slugs must never parse as one.
        try:
            UUID(value)
        except ValueError:
            return value
        raise ValueError("slug must not look like a package id")


class PackagePatchRequest(RequestModel):
    version: str | None = Field(default=None, min_length=1, max_length=64)
    display_name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1, max_length=5000)
    readme: str | None = None
    license: str | None = None
    price_usd: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=4)
    required_tier: int | None = Field(default=None, ge=0, le=3)
    category: str | None = None
    maturity: str | None = None
    tags: list[str] | None = Field(default=None, max_length=20)
    icon: str | None = None
    repository_url: str | None = None
    homepage_url: str | None = None
    status: Literal["active", "archived", "banned"] | None = None


class PackageResponse(ApiModel):
    id: str
    slug: str
    version: str
    display_name: str
    description: str
    readme: str | None
    author_user_id: str
    author_name: str
    license: str
    price_usd: Decimal
    required_tier: int
    category: str
    maturity: str
    tags: list[str]
    icon: str | None
    repository_url: str | None
    homepage_url: str | None
    status: str
    install_count: int
    rating: Decimal
    rating_count: int
    created_at: int
    updated_at: int
    released_at: int


class PackagePage(ApiModel):
    items: list[PackageResponse]
    total: int
    limit: int
    offset: int


def to_package_response(package: Package) -> PackageResponse:
    return PackageResponse(
        id=package.id,
        slug=package.slug,
        version=package.version,
        display_name=package.display_name,
        description=package.description,
        readme=package.readme,
        author_user_id=package.author_user_id,
        author_name=package.author_name,
        license=package.license,
        price_usd=package.price_usd,
        required_tier=package.required_tier,
        category=package.category,
        maturity=package.maturity,
        tags=list(package.tags or []),
        icon=package.icon,
        repository_url=package.repository_url,
        homepage_url=package.homepage_url,
        status=package.status,
        install_count=package.install_count,
        rating=package.rating,
        rating_count=package.rating_count,
        created_at=package.created_at,
        updated_at=package.updated_at,
        released_at=package.released_at,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[PackageResponse])
async def create_package(
    request: Request,
    payload: PackageCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    fields = payload.model_dump()
    # Ownership always comes from the authenticated caller.
    fields["author_name"] = fields.get("author_name") or principal.display_name
    package = await packages_service.create_package(db, author_user_id=principal.user_id, fields=fields)
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="package.created",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=get_request_id(request),
        metadata={"slug": package.slug, "version": package.version},
    )
    return success_response(request=request, data=to_package_response(package))


@router.get("", response_model=SuccessEnvelope[PackagePage])
async def search_packages(
    request: Request,
    q: str | None = Query(default=None, max_length=200),
    category: str | None = None,
    license: str | None = None,
    maturity: str | None = None,
    tags: list[str] | None = Query(default=None),
    min_rating: Decimal | None = Query(default=None, alias="minRating", ge=0, le=5),
    max_price_usd: Decimal | None = Query(default=None, alias="maxPriceUsd", ge=0),
    sort: Literal["popularity", "rating", "recent", "name"] = "popularity",
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    params = packages_repo.PackageSearch(
        query=q,
        category=category,
        license=license,
        maturity=maturity,
        tags=tuple(tags or ()),
        min_rating=min_rating,
        max_price_usd=max_price_usd,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    items, total = await packages_repo.search_packages(db, params)
    page = PackagePage(
        items=[to_package_response(item) for item in items], total=total, limit=limit, offset=offset
    )
    return success_response(request=request, data=page)


@router.get("/mine", response_model=SuccessEnvelope[list[PackageResponse]])
async def list_my_packages(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    packages = await packages_repo.list_packages_by_author(db, principal.user_id)
    return success_response(request=request, data=[to_package_response(p) for p in packages])


@router.get("/by-slug/{slug}", response_model=SuccessEnvelope[PackageResponse])
async def get_package_by_slug(
    slug: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package = await packages_service.require_package_by_slug(db, slug)
    _ensure_visible(package, principal)
    return success_response(request=request, data=to_package_response(package))


@router.get("/{package_id}", response_model=SuccessEnvelope[PackageResponse])
async def get_package(
    package_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package = await packages_service.require_package(db, package_id)
    _ensure_visible(package, principal)
    return success_response(request=request, data=to_package_response(package))


@router.patch("/{package_id}", response_model=SuccessEnvelope[PackageResponse])
async def patch_package(
    package_id: str,
    request: Request,
    payload: PackagePatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key in _NULLABLE_FIELDS
    }
    package = await packages_service.update_package(
        db, package_id, caller_id=principal.user_id, is_admin=principal.is_admin, changes=dict(changes)
    )
    await record_event(
        actor_id=principal.user_id,
        actor_role=principal.role,
        event_type="package.updated",
        outcome="success",
        resource_type="package",
        resource_id=package.id,
        request_id=get_request_id(request),
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=to_package_response(package))


def _ensure_visible(package: Package, principal: Principal) -> None:
    # Banned packages disappear for everyone except their author and admins.
    if package.status == "banned" and package.author_user_id != principal.user_id and not principal.is_admin:
        raise PackageNotFound()
