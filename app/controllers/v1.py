from fastapi import APIRouter

from . import admin, analyze, health, quota

router = APIRouter(prefix="/v1")
router.include_router(analyze.router)
router.include_router(quota.router)
router.include_router(health.router)
# every admin route checks X-Admin-Token
router.include_router(admin.router)
