from fastapi import APIRouter
from qbo_demo.api import accounts, pages

api_router = APIRouter()

# JSON endpoints
api_router.include_router(accounts.router, prefix="/api", tags=["api"])

# Browser pages and form posts
api_router.include_router(pages.router, tags=["pages"])
