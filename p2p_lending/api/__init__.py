"""
P2P Lending API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .borrowers import router as borrowers_router
from .cron import router as cron_router
from .lenders import router as lenders_router
from .loans import router as loans_router
from .matching import router as matching_router
from .vouches import router as vouches_router
from .webhooks import router as webhooks_router
from .. import __version__


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="P2P Lending Engine API",
        description="Loan lifecycle and trust orchestration for peer-to-peer micro-lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(matching_router, prefix="/matches", tags=["Matching"])
    app.include_router(borrowers_router, prefix="/borrowers", tags=["Borrowers"])
    app.include_router(lenders_router, prefix="/lenders", tags=["Lenders"])
    app.include_router(vouches_router, prefix="/vouches", tags=["Vouches"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(cron_router, prefix="/cron", tags=["Cron"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "p2p_lending_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "P2P Lending Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "matches": "/matches",
                "borrowers": "/borrowers",
                "lenders": "/lenders",
                "vouches": "/vouches",
                "webhooks": "/webhooks",
                "cron": "/cron",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False) -> None:
    """Run the FastAPI server"""
    uvicorn.run(
        "p2p_lending.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="debug" if debug else "info"
    )
