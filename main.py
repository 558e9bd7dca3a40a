"""FastAPI application for the chat assistant service"""
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables
load_dotenv()

from config import settings
from api.routes.assistant import router as assistant_router, close_dispatcher
from api.routes.sms_webhook import router as sms_router

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flushes the working set when memory is persistent
    await close_dispatcher()
    logger.info("Assistant closed")


# Create FastAPI app
app = FastAPI(
    title="Chat Assistant API",
    version="1.0.0",
    description="AI assistant orchestration with human handoff",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.get("/api")
async def api_root():
    """API root endpoint"""
    return {"message": "Chat Assistant API", "version": "1.0.0"}


app.include_router(assistant_router)
app.include_router(sms_router)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
