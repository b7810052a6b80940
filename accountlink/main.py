from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from accountlink.api.routes import router
from accountlink.api.admin_routes import router as admin_router
from accountlink.core.replies import render
from accountlink.observability.logging import log
from accountlink.settings import settings

app = FastAPI(title="Account Linking API")

# Origins come from env; empty means same-origin only.
origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
app.include_router(admin_router)


@app.get("/")
def root():
    return {
        "status": "ok",
        "message": "Account linking API is running. Use /health and POST /api/chat/events."
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# The gateway retries on non-200, which would redeliver the event. Engine
# failures answer 200 with a retry hint instead; the event key is not recorded
# so the user's own retry is handled normally.
# ---------------------------------------------------------------------------
@app.exception_handler(Exception)
async def universal_exception_handler(request: Request, exc: Exception):
    log(event="unhandled_exception", path=str(request.url.path), error=f"{type(exc).__name__}: {str(exc)[:200]}")
    return JSONResponse(
        status_code=200,
        content={
            "status": "error",
            "chatIdentityId": "",
            "reply": render("try_again"),
            "outcome": "try_again",
        },
    )
