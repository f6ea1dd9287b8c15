"""
Billing back-office and client portal API.

Entry point for the FastAPI backend.

URL scheme:
  /api/billing/*                                Back-office (usage import, pending charges, drafts)
  /api/client-portal/*                          Client portal (members and share links)
  /api/public-invoices/{share_id}               Anonymous share-link invoice view
  /api/me/*                                     Current user
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings


def _register_core_routes(app: FastAPI):
    """Register platform-level routes (hub, billing, portal)."""
    from core.hub.router import router as hub_router
    from core.billing.router import router as billing_router
    from core.portal.router import router as portal_router

    app.include_router(hub_router, prefix="/api", tags=["Platform Hub"])
    app.include_router(billing_router, prefix="/api/billing", tags=["Billing"])
    app.include_router(portal_router, prefix="/api", tags=["Client Portal"])
    print("[Router] Billing: /api/billing/*")
    print("[Router] Client portal: /api/client-portal/*, /api/public-invoices/*")


# Create app
app = FastAPI(
    title="Billing Portal API",
    description="Usage billing back-office and client portal",
    version="1.0.0",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ROUTE REGISTRATION
# ─────────────────────────────────────────────────────────────────────────────

_register_core_routes(app)


# ─────────────────────────────────────────────────────────────────────────────
# HEALTH CHECK & ROOT
# ─────────────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "debug": settings.debug}


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Billing Portal API",
        "version": "1.0.0",
        "docs": "/docs",
        "routes": {
            "billing": "/api/billing",
            "client-portal": "/api/client-portal",
            "public-invoices": "/api/public-invoices/{share_id}",
        }
    }
