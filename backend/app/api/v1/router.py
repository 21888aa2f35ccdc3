from fastapi import APIRouter

from app.api.v1 import routing, routing_policies

api_router = APIRouter()

api_router.include_router(routing.router, prefix="/routing", tags=["routing"])
api_router.include_router(routing_policies.router, prefix="/routing-policies", tags=["routing-policies"])
