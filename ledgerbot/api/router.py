from fastapi import APIRouter
from ledgerbot.api.endpoints import webhook, query, transactions, summary

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(webhook.router)
api_router.include_router(query.router)
api_router.include_router(transactions.router)
api_router.include_router(summary.router)
