"""
Content catalog snapshot endpoints, driven by the external refresh process.
"""

from fastapi import APIRouter, Depends, HTTPException

from recommender.api.dependencies import get_catalog
from recommender.api.schemas import CatalogRequest, CatalogResponse
from recommender.catalog.snapshot import CatalogSnapshotHolder

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("", response_model=CatalogResponse)
async def catalog_info(catalog: CatalogSnapshotHolder = Depends(get_catalog)):
    return CatalogResponse(version=catalog.version, size=len(catalog))


@router.put("", response_model=CatalogResponse)
async def replace_catalog(
    body: CatalogRequest,
    catalog: CatalogSnapshotHolder = Depends(get_catalog),
):
    """Replace the catalog snapshot used by subsequent requests."""
    try:
        version = catalog.replace(item.to_domain() for item in body.items)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_catalog", "message": str(e)})
    return CatalogResponse(version=version, size=len(catalog))
