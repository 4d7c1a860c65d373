from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Optional
from datetime import datetime, timezone

from unit_catalog import DEFAULT_SMALL_VOLUME_UNIT_IDS, ProductUnitProfile, UnitCatalog, UnitOption, UnitOptionPolicy
from unit_factor_engine import ConversionError, FactorResolution, PathWeighting, Unit, UnitConversion
from unit_repository import MongoUnitRepository

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'units')]

# ==================== UNIT ENGINE CONFIGURATION ====================

def parse_unit_ids(value: str) -> List[int]:
    """Parse a comma separated list of unit ids, e.g. "2, 13,30" """
    return [int(part.strip()) for part in value.split(',') if part.strip()]

PATH_WEIGHTING = PathWeighting(os.environ.get('UNIT_PATH_WEIGHTING', PathWeighting.HOPS.value).strip().lower())

small_volume_env = os.environ.get('SMALL_VOLUME_UNIT_IDS', '')
SMALL_VOLUME_UNIT_IDS = parse_unit_ids(small_volume_env) if small_volume_env else list(DEFAULT_SMALL_VOLUME_UNIT_IDS)

unit_repository = MongoUnitRepository(db)
unit_catalog = UnitCatalog(
    unit_repository.select_units,
    unit_repository.select_direct_conversions,
    path_weighting=PATH_WEIGHTING,
    option_policy=UnitOptionPolicy(small_volume_unit_ids=SMALL_VOLUME_UNIT_IDS)
)

async def get_unit_catalog() -> UnitCatalog:
    return unit_catalog

app = FastAPI(title="Unit Factor Service")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
# Default allowed origins for local development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3001",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Accept",
        "Origin",
        "Access-Control-Request-Method",
        "Access-Control-Request-Headers",
    ],
    max_age=600,  # Cache preflight for 10 minutes
)

@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    return JSONResponse(
        status_code=422,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "field": exc.field,
            "severity": exc.severity
        }
    )

# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Unit Factor API",
        "path_weighting": PATH_WEIGHTING.value,
        "version": "1.0.0"
    }

api_router = APIRouter(prefix="/api")

# ==================== UNIT ROUTES ====================

@api_router.get("/units", response_model=List[Unit])
async def get_units(product_id: Optional[int] = None, catalog: UnitCatalog = Depends(get_unit_catalog)):
    """Generic units, or the product's own units when product_id is given"""
    return await catalog.get_units(product_id)

@api_router.get("/units/{unit_id}", response_model=Unit)
async def get_unit(unit_id: int, catalog: UnitCatalog = Depends(get_unit_catalog)):
    unit = await catalog.get_unit(unit_id)
    if not unit:
        raise HTTPException(status_code=404, detail="Unit not found")
    return unit

@api_router.get("/units/{unit_id}/option", response_model=UnitOption)
async def get_unit_option(unit_id: int, catalog: UnitCatalog = Depends(get_unit_catalog)):
    option = await catalog.get_unit_option(unit_id)
    if not option:
        raise HTTPException(status_code=404, detail="Unit not found")
    return option

@api_router.get("/unit-conversions/generic", response_model=List[UnitConversion])
async def get_generic_direct_conversions(catalog: UnitCatalog = Depends(get_unit_catalog)):
    return await catalog.get_generic_direct_conversions()

# ==================== FACTOR ROUTES ====================

@api_router.get("/unit-factors", response_model=FactorResolution)
async def resolve_unit_factor(
    from_unit_id: int,
    to_unit_id: int,
    product_ids: List[int] = Query(default=[]),
    catalog: UnitCatalog = Depends(get_unit_catalog)
):
    """Factor with its path and per-step audit trail"""
    return await catalog.resolve_factor(from_unit_id, to_unit_id, product_ids)

@api_router.get("/unit-factors/value")
async def get_unit_factor(
    from_unit_id: int,
    to_unit_id: int,
    product_ids: List[int] = Query(default=[]),
    catalog: UnitCatalog = Depends(get_unit_catalog)
):
    """Plain factor; null when the units are not connected"""
    factor = await catalog.get_factor(from_unit_id, to_unit_id, product_ids)
    return {
        "from_unit_id": from_unit_id,
        "to_unit_id": to_unit_id,
        "product_ids": product_ids,
        "factor": factor
    }

# ==================== PRODUCT UNIT OPTION ROUTES ====================

@api_router.get("/products/{product_id}/unit-options", response_model=List[UnitOption])
async def get_product_unit_options(
    product_id: int,
    amount_unit_id: int,
    form_id: Optional[int] = None,
    rec_dose_unit_id: Optional[int] = None,
    catalog: UnitCatalog = Depends(get_unit_catalog)
):
    profile = ProductUnitProfile(
        product_id=product_id,
        amount_unit_id=amount_unit_id,
        form_id=form_id,
        rec_dose_unit_id=rec_dose_unit_id
    )
    return await catalog.get_unit_options_for_product(profile)

app.include_router(api_router)

@app.on_event("startup")
async def startup_event():
    logger.info(f"CORS origins: {cors_origins}")
    try:
        await unit_repository.ensure_indexes()
    except Exception as e:
        logger.warning(f"Failed to create unit indexes: {e}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
