from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.db import engine, Base

from app.models.tenant import Agency, Client
from app.models.campaign import Campaign
from app.models.recipient import Recipient
from app.models.reward_pool import RewardPool
from app.models.reward_unit import RewardUnit
from app.models.campaign_condition import CampaignCondition
from app.models.recipient_condition_status import RecipientConditionStatus
from app.models.messaging_account import MessagingAccount
from app.models.delivery_record import DeliveryRecord
from app.models.activity_log import ActivityLog

from app.routes.conditions import router as conditions_router
from app.routes.campaign_conditions import router as campaign_conditions_router
from app.routes.reward_pools import router as reward_pools_router
from app.routes.messaging_accounts import router as messaging_accounts_router
from app.routes.deliveries import router as deliveries_router
from app.routes.admin import router as admin_router

app = FastAPI(title="Reward Fulfillment Engine")

# ─── CORS ─────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "https://localhost:3000",
        "http://127.0.0.1:3000",
        "https://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup():
    Base.metadata.create_all(bind=engine)


app.include_router(conditions_router)
app.include_router(campaign_conditions_router)
app.include_router(reward_pools_router)
app.include_router(messaging_accounts_router)
app.include_router(deliveries_router)
app.include_router(admin_router)


@app.get("/")
def read_root():
    return {"message": "Reward Fulfillment Engine is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001, reload=True)
