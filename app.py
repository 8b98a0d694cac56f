# Copyright 2024-2025 The vLLM Production Stack Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from env_config import load_config_from_env
from errors import EngineError
from parsers.parser import parse_args
from routers.certificate_router import router as certificate_router
from routers.domain_registration_router import router as domain_registration_router
from routers.host_probe_router import router as host_probe_router
from services.engine_service import (
    cleanup_engine_service,
    get_engine_service,
    initialize_engine_service,
)

logger = logging.getLogger("uvicorn")

ERROR_STATUS = {
    "validation": 400,
    "credential": 400,
    "not_found": 404,
    "conflict": 409,
    "external_transient": 503,
    "external_permanent": 502,
    "dns_record_absent": 502,
    "storage": 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = None
    if get_engine_service() is None:
        config = getattr(app.state, "config", None) or load_config_from_env()
    logger.info("Initializing engine service")
    await initialize_engine_service(config)

    yield

    logger.info("Cleaning up engine service")
    await cleanup_engine_service()


app = FastAPI(title="certroute", lifespan=lifespan)
app.include_router(domain_registration_router)
app.include_router(certificate_router)
app.include_router(host_probe_router)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Map typed engine errors onto HTTP statuses with a uniform body."""
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{exc.kind} error in {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} error in {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions with consistent error format."""
    logger.error(f"Unhandled exception in {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "kind": "internal",
            "retryable": False,
            "details": {"path": str(request.url.path)},
        },
    )


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/status")
async def status():
    service = get_engine_service()
    if service is None:
        return JSONResponse(
            status_code=503,
            content={"initialized": False, "error": "Engine service not available"},
        )
    return await service.get_status()


def main():
    args = parse_args()
    config = args.config_obj
    app.state.config = config
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)


if __name__ == "__main__":
    main()
