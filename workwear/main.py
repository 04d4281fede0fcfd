"""Main FastAPI application entry point."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workwear.config import settings
from workwear.database import engine, Base
from workwear.logging_utils import configure_logging
from workwear.api.routes import router
# Import models to register them with SQLAlchemy Base
from workwear.models.domain import Employee, ClothingType, ClothingItem, Transaction, Confirmation
from workwear.models.audit import AuditEvent

configure_logging(settings.log_level)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Workwear - Clothing Issuance Service",
    description="Issues workwear to employees, takes it back, and keeps the custody ledger.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Workwear"])


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Workwear"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
