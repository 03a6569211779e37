from fastapi import APIRouter
from marketplace.api.v1.routes.public import router as public_router
from marketplace.api.v1.routes.cart import router as cart_router
from marketplace.api.v1.routes.orders import router as orders_router
from marketplace.api.v1.routes.reservations import router as reservations_router
from marketplace.api.v1.routes.payments import router as payments_router
from marketplace.api.v1.routes.admin import router as admin_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(public_router)
api_router.include_router(cart_router)
api_router.include_router(orders_router)
api_router.include_router(reservations_router)
api_router.include_router(payments_router)
api_router.include_router(admin_router)
