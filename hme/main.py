from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from hme.api.routes import router
from hme.icloud.errors import HmeError
from hme.observability.logging import log
from hme.settings import settings

app = FastAPI(title="Hide My Email sign-in service")

# Surfaces may run in a browser context; origins are restricted via env.
origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/")
def root():
    return {
        "status": "ok",
        "message": "Sign-in service is running. Use /health and POST /auth/signin.",
    }


@app.exception_handler(HmeError)
async def hme_error_handler(request: Request, exc: HmeError):
    # Provider trouble that escaped a route: report it without leaking details
    log(event="unhandled_hme_error", path=request.url.path, errorType=type(exc).__name__)
    return JSONResponse(status_code=502, content={"success": False, "error": type(exc).__name__})
