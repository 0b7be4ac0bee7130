# Add routes here
from fastapi import APIRouter
from .v1 import nodes, sandboxes, types, workflows

api_router = APIRouter(prefix="/api", tags=["workflow-engine"])

api_router.include_router(types.router, prefix="/v1", tags=["types"])
api_router.include_router(nodes.router, prefix="/v1", tags=["nodes"])
api_router.include_router(workflows.router, prefix="/v1", tags=["workflows"])
api_router.include_router(sandboxes.router, prefix="/v1", tags=["sandboxes"])

@api_router.get("/")
def read_root():
    return {"message": "qflow workflow engine"}
