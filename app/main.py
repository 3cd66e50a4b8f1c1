# main.py: FastAPI application: CORS, agent routes, JSON error responses.

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import ai_proxy as ap
from app.routes import agent_router

# Set up the environment variables and logging. This reads the .env file.
ap.common.setup()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = ap.common.get_settings()
    ap.common.get_client(settings)
    app.state.agents = ap.agent.definitions.build_agents(settings)
    logger.info(f"AI Proxy listening on port {settings.port}")
    yield
    ap.common.close_client()


app = FastAPI(title="AI Proxy", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ap.common.get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agent_router)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error_response(404, str(ap.errors.InvalidRoute()))
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return _error_response(400, f"Invalid request: {errors}")


@app.exception_handler(ap.errors.AIProxyError)
async def ai_proxy_exception_handler(request: Request, exc: ap.errors.AIProxyError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return _error_response(exc.status_code, str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed")
    return _error_response(500, str(exc))


def main() -> None:
    settings = ap.common.get_settings()
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
