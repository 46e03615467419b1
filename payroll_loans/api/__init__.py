"""
Payroll Loans API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .loans import router as loans_router
from .employees import router as employees_router
from .payroll import router as payroll_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Payroll Loans API",
        description="Employee loan and salary advance amortization and repayment engine",
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

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(employees_router, prefix="/employees", tags=["Employees"])
    app.include_router(payroll_router, prefix="/payroll", tags=["Payroll"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "payroll_loans_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Payroll Loans API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "employees": "/employees/{employee_id}/loans",
                "payroll": "/payroll/deductions",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8091, debug: bool = False, log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(
        "payroll_loans.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level=log_level
    )
