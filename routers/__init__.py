from .items_api import router as items_api_router
from .transactions_api import router as transactions_api_router
from .users_api import router as users_api_router
from .notifications_api import router as notifications_api_router
from .guest_requests_api import router as guest_requests_api_router

ALL_ROUTERS = (
    items_api_router,
    transactions_api_router,
    users_api_router,
    notifications_api_router,
    guest_requests_api_router,
)
