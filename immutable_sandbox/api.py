"""
HTTP surface for Immutable Sandbox.

Thin FastAPI layer over ``Sandbox``; every ``SandboxError`` is rendered
by one exception handler as {"error", "step", "state_changed", "detail"}.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import Settings
from .errors import (
    DuplicateLocation,
    InvalidTransition,
    NotFound,
    SandboxError,
    TimestampUnavailable,
)
from .logging_config import set_operation_id
from .sandbox import Sandbox


class CreateExperimentRequest(BaseModel):
    name: str
    location: str
    input_source: Optional[str] = None


class FinalizeRequest(BaseModel):
    provision_identity: bool = False
    identity_name: Optional[str] = None


def status_for(err: SandboxError) -> int:
    if isinstance(err, NotFound):
        return 404
    if isinstance(err, (DuplicateLocation, InvalidTransition)):
        return 409
    if isinstance(err, TimestampUnavailable):
        return 502
    return 500


def create_app(sandbox: Optional[Sandbox] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the app. Without an explicit sandbox one is created from
    ``Settings.from_env()`` on first use.
    """
    app = FastAPI(title="Immutable Sandbox")
    app.state.sandbox = sandbox
    app.state.settings = settings

    def get_sandbox() -> Sandbox:
        if app.state.sandbox is None:
            app.state.sandbox = Sandbox.from_settings(app.state.settings or Settings.from_env())
        return app.state.sandbox

    @app.middleware("http")
    async def _operation_id(request: Request, call_next):
        op_id = set_operation_id(request.headers.get("X-Operation-Id"))
        response = await call_next(request)
        response.headers["X-Operation-Id"] = op_id
        return response

    @app.exception_handler(SandboxError)
    async def _sandbox_error(request: Request, exc: SandboxError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    @app.post("/experiments", status_code=201)
    async def create_experiment(req: CreateExperimentRequest):
        exp = await get_sandbox().create_experiment(req.name, req.location, req.input_source)
        return exp.to_dict()

    @app.get("/experiments")
    async def list_experiments():
        return [exp.to_dict() for exp in await get_sandbox().list()]

    @app.get("/experiments/{exp_id}")
    async def get_experiment(exp_id: str):
        return (await get_sandbox().get(exp_id)).to_dict()

    @app.post("/experiments/{exp_id}/open")
    async def open_experiment(exp_id: str):
        return (await get_sandbox().open(exp_id)).to_dict()

    @app.post("/experiments/{exp_id}/finalize")
    async def finalize_experiment(exp_id: str, req: Optional[FinalizeRequest] = None):
        req = req or FinalizeRequest()
        result = await get_sandbox().finalize(
            exp_id, provision_identity=req.provision_identity, identity_name=req.identity_name
        )
        return result.to_dict()

    @app.get("/experiments/{exp_id}/verify")
    async def verify_experiment(exp_id: str):
        return (await get_sandbox().verify(exp_id)).to_dict()

    @app.delete("/experiments/{exp_id}")
    async def remove_experiment(exp_id: str):
        exp = await get_sandbox().remove(exp_id)
        return {"removed": exp.to_dict()}

    return app
