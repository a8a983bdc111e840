# API layer - FastAPI routers
