"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rule_workflow.api.routes import router
from rule_workflow.config import get_settings
from rule_workflow.database import init_db
from rule_workflow.logging_config import configure_logging
from rule_workflow.services.errors import WorkflowError

settings = get_settings()
configure_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    init_db()
    yield


# Create FastAPI app
app = FastAPI(
    title="Rule Workflow - Staged Promotion Service",
    description="Moves business rule versions through WIP, TEST, PENDING and PROD behind approvals.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(WorkflowError)
def workflow_error_handler(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed input is a caller-fixable 400, not FastAPI's default 422
    errors = [
        f"{'.'.join(str(part) for part in err['loc'] if part != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": ", ".join(errors)})


# Include API routes
app.include_router(router, prefix="/api", tags=["Rule workflow"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Rule Workflow"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
