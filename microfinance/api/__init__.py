"""
Microfinance API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from .loans import router as loans_router
from .distributions import router as distributions_router
from .metrics import router as metrics_router
from .loan_config import router as loan_config_router
from .expenses import router as expenses_router
from .. import __version__


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microfinance Back-Office API",
        description="Loan lifecycle, collections, distributions and financial metrics",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(distributions_router, prefix="/distributions", tags=["Distributions"])
    app.include_router(metrics_router, prefix="/metrics", tags=["Metrics"])
    app.include_router(loan_config_router, prefix="/loan-config", tags=["Loan Configuration"])
    app.include_router(expenses_router, prefix="/expenses", tags=["Expenses"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microfinance_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Microfinance Back-Office API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "distributions": "/distributions",
                "metrics": "/metrics",
                "loan-config": "/loan-config",
                "expenses": "/expenses",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "microfinance.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
