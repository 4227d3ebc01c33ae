from leadengine.routes.conversations import router as conversations_router
from leadengine.routes.cron import router as cron_router
from leadengine.routes.leads import router as leads_router
from leadengine.routes.referrals import router as referrals_router
from leadengine.routes.webhooks import router as webhooks_router

__all__ = [
    "conversations_router",
    "cron_router",
    "leads_router",
    "referrals_router",
    "webhooks_router",
]
