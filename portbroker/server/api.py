from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from .controller import LifecycleController

# Control-plane routes
api_router = APIRouter(tags=["tunnels"])

# Global controller instance (set by app.py)
_controller: Optional[LifecycleController] = None


def set_controller(controller: Optional[LifecycleController]):
    """Set the global controller instance"""
    global _controller
    _controller = controller


def get_controller() -> LifecycleController:
    """Get the global controller instance"""
    if _controller is None:
        raise RuntimeError("Controller not initialized")
    return _controller


# Response models
class APIKeyResponse(BaseModel):
    message: str
    apiKey: str = Field(..., description="Token to pass as apiKey when registering tunnels")


class RegisterResponse(BaseModel):
    message: str
    tunnelId: str
    publicAddress: str
    region: str
    statusPage: str


class StopResponse(BaseModel):
    message: str


class StatusResponse(BaseModel):
    tunnelId: str
    publicAddress: str
    localPort: int
    region: str


class HealthResponse(BaseModel):
    status: str
    activeTunnels: int


async def read_json_body(request: Request) -> dict:
    """Request body as a dict; a missing or malformed body reads as empty"""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _api_key(request: Request, body: dict) -> Optional[str]:
    return body.get("apiKey") or request.query_params.get("apiKey")


@api_router.post("/generate-api-key", response_model=APIKeyResponse)
async def generate_api_key(request: Request):
    """Issue a new API key for a user"""
    body = await read_json_body(request)
    client_ip = request.client.host if request.client else None
    api_key = await get_controller().generate_credential(body.get("user"), client_ip)
    return APIKeyResponse(message="API key generated successfully!", apiKey=api_key)


@api_router.post("/register", response_model=RegisterResponse)
async def register_tunnel(request: Request):
    """Register a local port and start forwarding a public port to it"""
    body = await read_json_body(request)
    tunnel = await get_controller().register(_api_key(request, body), body.get("localPort"))
    return RegisterResponse(
        message="Tunnel created successfully!",
        tunnelId=tunnel.tunnel_id,
        publicAddress=tunnel.public_address,
        region=tunnel.region,
        statusPage=tunnel.status_page,
    )


@api_router.post("/stop", response_model=StopResponse)
async def stop_tunnel(request: Request):
    body = await read_json_body(request)
    await get_controller().stop(_api_key(request, body), body.get("tunnelId"))
    return StopResponse(message="Tunnel stopped successfully!")


@api_router.get("/status/{tunnel_id}", response_model=StatusResponse)
async def tunnel_status(tunnel_id: str):
    tunnel = await get_controller().status(tunnel_id)
    return StatusResponse(
        tunnelId=tunnel.tunnel_id,
        publicAddress=tunnel.public_address,
        localPort=tunnel.local_port,
        region=tunnel.region,
    )


@api_router.get("/_health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", activeTunnels=get_controller().active_count())


# In path mode the public address of a tunnel is /<tunnelId>; must stay last
@api_router.get("/{tunnel_id}", response_model=StatusResponse, include_in_schema=False)
async def tunnel_status_by_path(tunnel_id: str):
    return await tunnel_status(tunnel_id)
